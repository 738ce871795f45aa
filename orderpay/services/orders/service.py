"""Order ledger: atomic order placement and payment linkage.

Identifiers are allocated before the write, each in its own short transaction.
The order header, every item and the `orders.created` outbox row then commit
together or not at all.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from orderpay.common.config import settings
from orderpay.common.errors import (
    AddressNotOwned,
    EmptyCart,
    OrderAlreadyPaid,
    OrderNotFound,
    OrderPersistenceFailed,
    PriceMismatch,
    RetryExhausted,
)
from orderpay.common.logging import logger, order_id_ctx
from orderpay.common.metrics import order_create_latency_seconds, orders_created_total
from orderpay.common.outbox import enqueue_event
from orderpay.common.retry import RetryPolicy, retry_call
from orderpay.services.orders.models import Address, Order, OrderItem, Product
from orderpay.services.orders.schemas import CartItem, CartSubmission, OrderPaymentUpdate, UserContext
from orderpay.services.sequencing.identifiers import (
    PROFORMA,
    InvoiceNumberGenerator,
    OrderIdentifierGenerator,
    business_now,
    financial_year,
)


CENT = Decimal("0.01")
PRICE_CHECK_MODES = ("enforce", "warn", "off")


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    grand_total: Decimal
    rounded_total: Decimal
    rounding_off: Decimal


def compute_totals(items: list[CartItem], discount: Decimal, delivery_charge: Decimal | None) -> OrderTotals:
    """Grand total from client line totals, rounded half-up to whole currency units.

    The rounding difference is kept (signed) so the invoice can show it.
    """

    subtotal = sum((item.price * item.quantity for item in items), Decimal("0")).quantize(CENT)
    discount = (discount or Decimal("0")).quantize(CENT)
    shipping = (delivery_charge or Decimal("0")).quantize(CENT)
    grand_total = subtotal - discount + shipping
    rounded_total = grand_total.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return OrderTotals(
        subtotal=subtotal,
        discount=discount,
        shipping=shipping,
        grand_total=grand_total,
        rounded_total=rounded_total,
        rounding_off=(rounded_total - grand_total).quantize(CENT),
    )


class OrderLedger:
    """Writes orders with their items and links captured payments to them.

    `session_factory` must build sessions with `expire_on_commit=False`; returned
    orders are read after their session closes.
    """

    def __init__(
        self,
        session_factory,
        order_ids: OrderIdentifierGenerator,
        invoice_numbers: InvoiceNumberGenerator,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = business_now,
        price_check_mode: str | None = None,
        price_tolerance: Decimal | None = None,
        service_name: str = "orders",
    ) -> None:
        self.session_factory = session_factory
        self.order_ids = order_ids
        self.invoice_numbers = invoice_numbers
        self.policy = policy or RetryPolicy(
            max_attempts=settings.order_update_max_attempts,
            base_delay=settings.order_update_base_delay_seconds,
            backoff_multiplier=settings.order_update_backoff_multiplier,
        )
        self.sleep = sleep
        self.clock = clock
        self.price_check_mode = price_check_mode or settings.price_check_mode
        if self.price_check_mode not in PRICE_CHECK_MODES:
            raise ValueError(f"price_check_mode must be one of {PRICE_CHECK_MODES}")
        self.price_tolerance = settings.price_tolerance if price_tolerance is None else price_tolerance
        self.service_name = service_name

    def _check_prices(self, items: list[CartItem], products: dict[str, Product]) -> None:
        """Compare client prices with the catalog for every resolvable product."""

        if self.price_check_mode == "off":
            return
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                continue
            listed = item.original_price if item.original_price is not None else item.price
            if abs(listed - product.price) <= self.price_tolerance and item.price <= listed + self.price_tolerance:
                continue
            if self.price_check_mode == "enforce":
                raise PriceMismatch(item.product_id, product.price, listed)
            logger.warning(
                "client price differs from catalog product_id=%s catalog=%s received=%s",
                item.product_id,
                product.price,
                listed,
            )

    def _load_context(self, cart: CartSubmission, address_id: str | None, user: UserContext):
        with self.session_factory() as db:
            address = db.get(Address, address_id) if address_id else None
            if address is None or address.user_id != user.user_id:
                raise AddressNotOwned(address_id)
            product_ids = {item.product_id for item in cart.items}
            products = {
                product.product_id: product
                for product in db.execute(select(Product).where(Product.product_id.in_(product_ids))).scalars()
            }
        unresolved = sorted(product_ids - products.keys())
        if unresolved:
            # Unknown products still sell; they just carry no tax.
            logger.warning("products not in catalog, tax defaulted to 0 product_ids=%s", unresolved)
        return address, products

    def create_order(self, cart: CartSubmission, address_id: str | None, user: UserContext) -> Order:
        """Validate, price, number and persist one order with all its items."""

        started = time.perf_counter()
        if not cart.items:
            raise EmptyCart()
        address, products = self._load_context(cart, address_id, user)
        self._check_prices(cart.items, products)
        totals = compute_totals(cart.items, cart.discount_amount, cart.delivery_charge)

        now = self.clock()
        order_id = self.order_ids.generate(now)
        invoice = self.invoice_numbers.generate(PROFORMA, user.is_business_account, financial_year(now.date()))
        order_id_ctx.set(order_id)

        def write() -> Order:
            with self.session_factory() as db:
                order = Order(
                    order_id=order_id,
                    placed_by=user.user_id,
                    order_date=now,
                    status="PENDING",
                    total_amount=totals.grand_total,
                    discount_amount=totals.discount,
                    delivery_charge=totals.shipping if totals.shipping > 0 else None,
                    rounded_off_amount=totals.rounding_off,
                    invoice_amount=totals.rounded_total,
                    invoice_type=PROFORMA,
                    invoice_office_id=settings.invoice_office_id,
                    invoice_sequence_number=invoice.sequence_number,
                    invoice_number=invoice.number,
                    shipping_address_id=address.address_id,
                    items=[
                        OrderItem(
                            product_id=item.product_id,
                            quantity=item.quantity,
                            price=item.price,
                            discount=max(
                                Decimal("0"),
                                (item.original_price if item.original_price is not None else item.price)
                                - item.price,
                            ),
                            tax=products[item.product_id].tax if item.product_id in products else Decimal("0"),
                        )
                        for item in cart.items
                    ],
                )
                db.add(order)
                enqueue_event(
                    db,
                    aggregate_type="order",
                    aggregate_id=order_id,
                    topic="orders.created",
                    payload={
                        "placed_by": user.user_id,
                        "invoice_number": invoice.number,
                        "invoice_amount": str(totals.rounded_total),
                        "item_count": len(cart.items),
                    },
                )
                db.commit()
                return order

        try:
            order = retry_call(write, self.policy, retry_on=(OperationalError,), dependency="order_store", sleep=self.sleep)
        except RetryExhausted as exc:
            logger.error("order write failed order_id=%s error=%s", order_id, exc.last_error)
            raise OrderPersistenceFailed(f"order {order_id} was not created") from exc
        except SQLAlchemyError as exc:
            logger.error("order write rejected order_id=%s error=%s", order_id, exc)
            raise OrderPersistenceFailed(f"order {order_id} was not created") from exc

        orders_created_total.labels(service=self.service_name).inc()
        order_create_latency_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        logger.info(
            "order created order_id=%s invoice_number=%s invoice_amount=%s rounded_off=%s",
            order_id,
            invoice.number,
            totals.rounded_total,
            totals.rounding_off,
        )
        return order

    def get_order(self, order_id: str, user_id: str) -> Order:
        """Fetch one order with items; foreign orders look like missing ones."""

        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None or order.placed_by != user_id:
                raise OrderNotFound(order_id)
            return order

    def list_orders(self, user_id: str) -> list[Order]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order).where(Order.placed_by == user_id).order_by(Order.order_date.desc())
                ).scalars()
            )

    def apply_payment(
        self,
        db,
        order_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        update: OrderPaymentUpdate,
        paid_at: datetime,
    ) -> Order:
        """Link a captured payment to its order inside the caller's transaction.

        Re-applying the same payment is a no-op. A different payment on an
        already paid order raises `OrderAlreadyPaid`.
        """

        order = db.get(Order, order_id, with_for_update=True)
        if order is None:
            raise OrderNotFound(order_id)
        if order.status == "PAID":
            if order.gateway_payment_id == gateway_payment_id:
                return order
            raise OrderAlreadyPaid(order_id)
        if update.address_id and update.address_id != order.shipping_address_id:
            address = db.get(Address, update.address_id)
            if address is None or address.user_id != order.placed_by:
                raise AddressNotOwned(update.address_id)
            order.shipping_address_id = address.address_id

        order.gateway_order_id = gateway_order_id
        order.gateway_payment_id = gateway_payment_id
        order.status = "PAID"
        order.paid_amount = order.total_amount
        order.paid_at = paid_at
        if update.discount_amount:
            order.discount_amount = update.discount_amount
        if update.delivery_charge:
            order.delivery_charge = update.delivery_charge
        if update.courier_name:
            order.shipping_courier_name = update.courier_name
        return order
