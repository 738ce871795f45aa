"""Sequence counter table: one row per independent counter stream."""

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orderpay.common.db import Base


class SequenceCounter(Base):
    """Last value handed out for one scope key.

    Rows are only ever touched through `SequenceAllocator.next_value`.
    """

    __tablename__ = "sequence_counters"
    __table_args__ = (CheckConstraint("last_value > 0", name="ck_sequence_counters_positive"),)

    scope_key: Mapped[str] = mapped_column(String, primary_key=True)
    last_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
