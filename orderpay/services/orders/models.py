"""Order ledger database models.

`orders` + `order_items` are owned by the ledger. `addresses` and `products`
are read-only projections of the address book and catalog collaborators.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderpay.common.db import Base


Money = Numeric(12, 2)


class Address(Base):
    """Shipping address owned by one user."""

    __tablename__ = "addresses"

    address_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    phone: Mapped[str] = mapped_column(String, default="")
    line1: Mapped[str] = mapped_column(String, default="")
    line2: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str] = mapped_column(String, default="")
    state: Mapped[str] = mapped_column(String, default="")
    pincode: Mapped[str] = mapped_column(String, default="")


class Product(Base):
    """Catalog price and tax rate used for tax lookup and the price check."""

    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, default="")
    price: Mapped[Decimal] = mapped_column(Money)
    tax: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))


class Order(Base):
    """Order header carrying identifiers, totals and payment linkage."""

    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("invoice_type", "invoice_number", name="uq_orders_invoice"),)

    order_id: Mapped[str] = mapped_column(String, primary_key=True)
    placed_by: Mapped[str] = mapped_column(String, index=True)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    total_amount: Mapped[Decimal] = mapped_column(Money)
    discount_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    delivery_charge: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    rounded_off_amount: Mapped[Decimal] = mapped_column(Money)
    invoice_amount: Mapped[Decimal] = mapped_column(Money)
    invoice_type: Mapped[str] = mapped_column(String)
    invoice_office_id: Mapped[str | None] = mapped_column(String, nullable=True)
    invoice_sequence_number: Mapped[int] = mapped_column(Integer)
    invoice_number: Mapped[str] = mapped_column(String, index=True)
    shipping_address_id: Mapped[str] = mapped_column(ForeignKey("addresses.address_id"))
    shipping_courier_name: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.item_id",
    )


class OrderItem(Base):
    """One cart line frozen into an order."""

    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        CheckConstraint("price >= 0", name="ck_order_items_price"),
        CheckConstraint("discount >= 0", name="ck_order_items_discount"),
        CheckConstraint("tax >= 0", name="ck_order_items_tax"),
    )

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(String, index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    price: Mapped[Decimal] = mapped_column(Money)
    discount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))

    order: Mapped[Order] = relationship(back_populates="items")
