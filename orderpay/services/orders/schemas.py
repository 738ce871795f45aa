"""Request/response schemas for order placement."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class UserContext(BaseModel):
    """Already-authenticated caller, as asserted by the upstream auth layer."""

    user_id: str = Field(min_length=1)
    is_business_account: bool = False


class CartItem(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    original_price: Decimal | None = Field(default=None, ge=0)


class CartSubmission(BaseModel):
    """Cart lines plus cart-level discount and the quoted delivery charge."""

    items: list[CartItem] = Field(default_factory=list)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_charge: Decimal | None = Field(default=None, ge=0)


class OrderCreateRequest(CartSubmission):
    address_id: str | None = None


class OrderPaymentUpdate(BaseModel):
    """Checkout state sent alongside the gateway callback.

    Unset (or zero) values keep what the order already has.
    """

    discount_amount: Decimal | None = Field(default=None, ge=0)
    delivery_charge: Decimal | None = Field(default=None, ge=0)
    address_id: str | None = None
    courier_name: str | None = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    price: Decimal
    discount: Decimal
    tax: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    status: str
    order_date: datetime
    total_amount: Decimal
    discount_amount: Decimal
    delivery_charge: Decimal | None
    rounded_off_amount: Decimal
    invoice_amount: Decimal
    invoice_type: str
    invoice_number: str
    shipping_address_id: str
    gateway_payment_id: str | None = None
    items: list[OrderItemResponse]
