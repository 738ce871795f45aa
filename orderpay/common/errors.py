"""Error taxonomy for order placement and payment reconciliation.

Validation errors are rejected before any side effect. Transient errors are the
ones callers may retry. `SignatureInvalid` is security relevant and is never
retried. The captured-but-unlinked case is not an exception at all; see
`orderpay.services.payments.schemas.PaymentCapturedOrderUpdateFailed`.
"""


class OrderPayError(Exception):
    """Base class for domain errors raised by orderpay services."""

    status_code = 400


class EmptyCart(OrderPayError):
    def __init__(self) -> None:
        super().__init__("order items are required")


class AddressNotOwned(OrderPayError):
    status_code = 404

    def __init__(self, address_id: str | None) -> None:
        super().__init__(f"address {address_id!r} not found or does not belong to user")
        self.address_id = address_id


class PriceMismatch(OrderPayError):
    """Client-supplied price disagrees with the catalog."""

    status_code = 409

    def __init__(self, product_id: str, expected, received) -> None:
        super().__init__(f"price mismatch for product {product_id}: catalog={expected} received={received}")
        self.product_id = product_id
        self.expected = expected
        self.received = received


class OrderNotFound(OrderPayError):
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class OrderAlreadyPaid(OrderPayError):
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} is already paid")
        self.order_id = order_id


class InvalidOfficeConfig(OrderPayError):
    status_code = 500


class RetryExhausted(OrderPayError):
    """Raised by the retry combinators once the policy gives up."""

    status_code = 503

    def __init__(self, dependency: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{dependency} failed after {attempts} attempts: {last_error}")
        self.dependency = dependency
        self.attempts = attempts
        self.last_error = last_error


class AllocationConflict(OrderPayError):
    """Sequence increment could not complete; safe to retry."""

    status_code = 503

    def __init__(self, scope_key: str, attempts: int) -> None:
        super().__init__(f"could not allocate next value for {scope_key} after {attempts} attempts")
        self.scope_key = scope_key
        self.attempts = attempts


class OrderPersistenceFailed(OrderPayError):
    status_code = 503


class GatewayUnavailable(OrderPayError):
    status_code = 502


class SignatureInvalid(OrderPayError):
    def __init__(self, gateway_order_id: str) -> None:
        super().__init__("payment verification failed: invalid signature")
        self.gateway_order_id = gateway_order_id


class PaymentNotCaptured(OrderPayError):
    status_code = 402

    def __init__(self, payment_id: str, gateway_status: str) -> None:
        super().__init__(f"payment {payment_id} status: {gateway_status}")
        self.payment_id = payment_id
        self.gateway_status = gateway_status


class PaymentAttemptNotFound(OrderPayError):
    status_code = 404

    def __init__(self, reference: str) -> None:
        super().__init__(f"payment attempt {reference} not found")
        self.reference = reference


class StaleAttemptState(OrderPayError):
    """Another request moved the payment attempt first."""

    status_code = 409


class ReconciliationNotPending(OrderPayError):
    status_code = 409
