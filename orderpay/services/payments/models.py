"""Payment attempt and saga timeline models.

A PaymentAttempt exists per gateway intent. Once a callback verifies, its
`gateway_payment_id` is stored here before the order row is touched, so the
payment stays visible even when the order update never lands.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orderpay.common import state_machine
from orderpay.common.db import Base, JSONDocument


LIFECYCLE_STATUS = {
    state_machine.INTENT_CREATED: "PENDING",
    state_machine.SIGNATURE_VERIFIED: "VERIFIED",
    state_machine.ORDER_UPDATE_RETRYING: "VERIFIED",
    state_machine.RECONCILED: "RECONCILED",
    state_machine.UPDATE_FAILED_ESCALATED: "UPDATE_FAILED",
    state_machine.PAYMENT_FAILED: "FAILED",
    state_machine.ABANDONED: "ABANDONED",
}


class PaymentAttempt(Base):
    """Current saga state of one gateway payment intent."""

    __tablename__ = "payment_attempts"

    attempt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.order_id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    gateway_order_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_update: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    last_error: Mapped[str | None] = mapped_column(String, nullable=True)
    unlinked_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def lifecycle_status(self) -> str:
        return LIFECYCLE_STATUS[self.status]


class PaymentTimeline(Base):
    """Immutable audit trail of every saga transition."""

    __tablename__ = "payment_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    attempt_id: Mapped[str] = mapped_column(ForeignKey("payment_attempts.attempt_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
