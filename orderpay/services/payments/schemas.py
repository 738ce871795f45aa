"""Payment intent, callback and reconciliation outcome schemas."""

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from orderpay.services.orders.schemas import OrderPaymentUpdate


class PaymentIntentRequest(BaseModel):
    order_id: str = Field(min_length=1)


class PaymentIntentResponse(BaseModel):
    """What the browser needs to open the gateway checkout modal."""

    attempt_id: str
    order_id: str
    gateway_order_id: str
    amount: int
    currency: str
    key_id: str | None = None


class GatewayCallback(BaseModel):
    """Signed proof of payment; accepts the gateway's own field names too."""

    payment_id: str = Field(min_length=1, validation_alias=AliasChoices("payment_id", "razorpay_payment_id"))
    gateway_order_id: str = Field(
        min_length=1, validation_alias=AliasChoices("gateway_order_id", "razorpay_order_id")
    )
    signature: str = Field(min_length=1, validation_alias=AliasChoices("signature", "razorpay_signature"))


class PaymentCallbackRequest(GatewayCallback):
    update: OrderPaymentUpdate = Field(default_factory=OrderPaymentUpdate)


class PaymentFailureRequest(BaseModel):
    reason: str = "payment_failed"


class VerifiedPayment(BaseModel):
    attempt_id: str
    order_id: str
    gateway_order_id: str
    gateway_payment_id: str
    amount_minor: int
    currency: str


class ReconciliationOutcome(BaseModel):
    status: str
    order_id: str
    attempt_id: str
    gateway_order_id: str
    gateway_payment_id: str


class PaymentReconciled(ReconciliationOutcome):
    status: Literal["RECONCILED"] = "RECONCILED"


class PaymentCapturedOrderUpdateFailed(ReconciliationOutcome):
    """Money moved but the order row does not show it yet.

    Never a payment failure: the payment id is preserved for an operator to
    link by hand (`durable_channel` says where it was recorded).
    """

    status: Literal["PAYMENT_CAPTURED_ORDER_UPDATE_FAILED"] = "PAYMENT_CAPTURED_ORDER_UPDATE_FAILED"
    attempts: int
    error: str
    durable_channel: Literal["database", "spool", "log"]
    message: str = ""


class PaymentAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_id: str
    order_id: str
    gateway_order_id: str
    gateway_payment_id: str | None
    amount_minor: int
    currency: str
    verified: bool
    status: str
    lifecycle_status: str
    last_error: str | None
    unlinked_payment_id: str | None = None
