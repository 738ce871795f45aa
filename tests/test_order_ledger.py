"""Order placement: totals, validation and atomic persistence."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from orderpay.common.errors import AddressNotOwned, EmptyCart, OrderNotFound, OrderPersistenceFailed, PriceMismatch
from orderpay.common.outbox import OutboxEvent
from orderpay.services.orders.models import Order, OrderItem
from orderpay.services.orders.schemas import CartItem, CartSubmission, UserContext
from orderpay.services.orders.service import OrderLedger, compute_totals
from orderpay.services.sequencing.models import SequenceCounter


USER = UserContext(user_id="user-1")


def cart(*items, discount="0", delivery=None) -> CartSubmission:
    return CartSubmission(
        items=list(items),
        discount_amount=Decimal(discount),
        delivery_charge=Decimal(delivery) if delivery is not None else None,
    )


def notebook(quantity=2, price="50.20", original_price=None) -> CartItem:
    return CartItem(
        product_id="prod-1",
        quantity=quantity,
        price=Decimal(price),
        original_price=Decimal(original_price) if original_price is not None else None,
    )


def count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_totals_round_half_up_to_whole_units():
    totals = compute_totals([notebook(quantity=2, price="50.20")], Decimal("0"), None)

    assert totals.grand_total == Decimal("100.40")
    assert totals.rounded_total == Decimal("100")
    assert totals.rounding_off == Decimal("-0.40")


def test_totals_half_rounds_up_and_include_discount_and_shipping():
    totals = compute_totals([notebook(quantity=1, price="100.00")], Decimal("10.00"), Decimal("40.50"))

    assert totals.grand_total == Decimal("130.50")
    assert totals.rounded_total == Decimal("131")
    assert totals.rounding_off == Decimal("0.50")


def test_create_order_persists_header_items_and_identifiers(session_factory, ledger):
    order = ledger.create_order(cart(notebook()), "addr-1", USER)

    assert order.order_id == "ODR-02042025-101530-0001"
    assert order.invoice_type == "PI"
    assert order.invoice_number == "P092025261"
    assert order.invoice_sequence_number == 1
    assert order.status == "PENDING"

    with session_factory() as db:
        stored = db.get(Order, order.order_id)
        assert stored.total_amount == Decimal("100.40")
        assert stored.invoice_amount == Decimal("100")
        assert stored.rounded_off_amount == Decimal("-0.40")
        assert stored.delivery_charge is None
        assert [(item.product_id, item.quantity, item.tax) for item in stored.items] == [
            ("prod-1", 2, Decimal("18.00"))
        ]


def test_create_order_writes_created_event(session_factory, ledger):
    order = ledger.create_order(cart(notebook()), "addr-1", USER)

    with session_factory() as db:
        events = db.execute(select(OutboxEvent)).scalars().all()
    assert [event.topic for event in events] == ["orders.created"]
    assert events[0].aggregate_id == order.order_id
    assert events[0].payload["payload"]["invoice_number"] == "P092025261"


def test_consecutive_orders_get_next_serials(ledger):
    first = ledger.create_order(cart(notebook()), "addr-1", USER)
    second = ledger.create_order(cart(notebook()), "addr-1", USER)

    assert first.order_id.endswith("-0001")
    assert second.order_id.endswith("-0002")
    assert second.invoice_number == "P092025262"


def test_item_discount_from_original_price(ledger):
    order = ledger.create_order(cart(notebook(quantity=1, price="45.20", original_price="50.20")), "addr-1", USER)

    assert order.items[0].discount == Decimal("5.00")


def test_empty_cart_rejected_before_any_allocation(session_factory, ledger):
    with pytest.raises(EmptyCart):
        ledger.create_order(cart(), "addr-1", USER)

    assert count(session_factory, SequenceCounter) == 0


@pytest.mark.parametrize("address_id", [None, "addr-other", "addr-missing"])
def test_address_must_belong_to_user(session_factory, ledger, address_id):
    with pytest.raises(AddressNotOwned):
        ledger.create_order(cart(notebook()), address_id, USER)

    assert count(session_factory, Order) == 0


def test_price_mismatch_enforced(session_factory, ledger):
    with pytest.raises(PriceMismatch) as excinfo:
        ledger.create_order(cart(notebook(price="1.00")), "addr-1", USER)

    assert excinfo.value.product_id == "prod-1"
    assert count(session_factory, Order) == 0


def test_price_mismatch_only_logged_in_warn_mode(session_factory, ledger):
    warn_ledger = OrderLedger(
        session_factory,
        ledger.order_ids,
        ledger.invoice_numbers,
        clock=ledger.clock,
        price_check_mode="warn",
    )

    order = warn_ledger.create_order(cart(notebook(price="1.00")), "addr-1", USER)

    assert order.total_amount == Decimal("2.00")


def test_unknown_product_sells_without_tax(ledger):
    mystery = CartItem(product_id="prod-unknown", quantity=1, price=Decimal("99.00"))

    order = ledger.create_order(cart(mystery), "addr-1", USER)

    assert order.items[0].tax == Decimal("0")


def test_failed_item_write_leaves_no_partial_order(session_factory, ledger, order_sleep):
    bad_line = CartItem.model_construct(
        product_id="prod-1", quantity=0, price=Decimal("50.20"), original_price=None
    )

    with pytest.raises(OrderPersistenceFailed):
        ledger.create_order(cart(notebook(), bad_line), "addr-1", USER)

    assert count(session_factory, Order) == 0
    assert count(session_factory, OrderItem) == 0
    assert count(session_factory, OutboxEvent) == 0
    # Constraint violations are not transient.
    assert order_sleep.calls == []
    # Allocated identifiers are burned, never reused.
    with session_factory() as db:
        assert db.get(SequenceCounter, "P09202526").last_value == 1


def test_get_order_hides_other_users_orders(ledger):
    order = ledger.create_order(cart(notebook()), "addr-1", USER)

    assert ledger.get_order(order.order_id, "user-1").order_id == order.order_id
    with pytest.raises(OrderNotFound):
        ledger.get_order(order.order_id, "user-2")


def test_list_orders_returns_only_own_orders(ledger):
    ledger.create_order(cart(notebook()), "addr-1", USER)
    ledger.create_order(cart(notebook()), "addr-1", USER)

    assert len(ledger.list_orders("user-1")) == 2
    assert ledger.list_orders("user-2") == []
