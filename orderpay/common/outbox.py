"""Transactional outbox: the table, enqueue helper, claim/mark logic and relay.

Rows are written in the same transaction as the state change they describe and
published to Kafka afterwards, so an event exists if and only if the change
committed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import DateTime, String, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from orderpay.common.db import Base, JSONDocument
from orderpay.common.events import EventEnvelope
from orderpay.common.logging import log_context, logger, trace_id_ctx
from orderpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def enqueue_event(db, aggregate_type: str, aggregate_id: str, topic: str, payload: dict) -> OutboxEvent:
    """Add one outbox row to the caller's session; the caller commits."""

    event = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=topic,
        topic=topic,
        payload=EventEnvelope(
            event_type=topic,
            aggregate_id=aggregate_id,
            trace_id=trace_id_ctx.get(),
            payload=payload,
        ).model_dump(),
    )
    db.add(event)
    return event


def claim_outbox_batch(db, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim pending rows, plus rows stuck in PROCESSING past the timeout."""

    table = OutboxEvent.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claimable = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(claimable))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def _set_status(db, event_id: str, status: str, sent_at: datetime | None) -> None:
    table = OutboxEvent.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status=status, sent_at=sent_at)
    )


def mark_outbox_sent(db, event_id: str) -> None:
    _set_status(db, event_id, "SENT", datetime.now(timezone.utc))


def requeue_outbox_event(db, event_id: str) -> None:
    _set_status(db, event_id, "PENDING", None)


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = OutboxEvent.__table__
    pending = table.c.status.in_(("PENDING", "PROCESSING"))
    pending_count = db.execute(select(func.count()).select_from(table).where(pending)).scalar_one()
    oldest_pending = db.execute(select(func.min(table.c.created_at)).where(pending)).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_pending(session_factory, bus, service_name: str, limit: int = 100) -> int:
    """Publish one claimed batch; failed rows go back to PENDING."""

    with session_factory() as db:
        rows = claim_outbox_batch(db, limit=limit)
        update_outbox_backlog_metrics(db, service_name)
        db.commit()
    for row in rows:
        envelope = EventEnvelope(**row["payload"])
        with log_context(trace_id=envelope.trace_id):
            try:
                await bus.publish(row["topic"], envelope)
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s topic=%s error=%s", row["id"], row["topic"], exc)
                with session_factory() as db:
                    requeue_outbox_event(db, row["id"])
                    db.commit()
                continue
            with session_factory() as db:
                mark_outbox_sent(db, row["id"])
                db.commit()
            logger.debug("outbox event published event_id=%s topic=%s", row["id"], row["topic"])
    return len(rows)


async def outbox_publisher(session_factory, bus, service_name: str, interval_seconds: float = 0.5) -> None:
    """Continuously relay outbox rows to Kafka until cancelled."""

    while True:
        try:
            await publish_pending(session_factory, bus, service_name)
        except Exception as exc:
            logger.error("outbox relay error=%s", exc)
        await asyncio.sleep(interval_seconds)
