"""Outbox relay: claim, publish, mark sent or requeue."""

import asyncio

from sqlalchemy import select

from orderpay.common.outbox import OutboxEvent, enqueue_event, publish_pending


class RecordingBus:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published = []

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("broker down")
        self.published.append((topic, event))


def seed_event(session_factory, aggregate_id="ODR-02042025-101530-0001"):
    with session_factory() as db:
        event = enqueue_event(
            db,
            aggregate_type="order",
            aggregate_id=aggregate_id,
            topic="orders.created",
            payload={"invoice_number": "P092025261"},
        )
        db.commit()
        return event.id


def statuses(session_factory):
    with session_factory() as db:
        return [event.status for event in db.execute(select(OutboxEvent)).scalars()]


def test_publish_marks_events_sent(session_factory):
    seed_event(session_factory)
    bus = RecordingBus()

    assert asyncio.run(publish_pending(session_factory, bus, "test")) == 1

    topic, envelope = bus.published[0]
    assert topic == "orders.created"
    assert envelope.aggregate_id == "ODR-02042025-101530-0001"
    assert envelope.payload == {"invoice_number": "P092025261"}
    assert statuses(session_factory) == ["SENT"]
    # Nothing left to claim.
    assert asyncio.run(publish_pending(session_factory, bus, "test")) == 0


def test_failed_publish_requeues_event(session_factory):
    seed_event(session_factory)

    asyncio.run(publish_pending(session_factory, RecordingBus(fail=True), "test"))

    assert statuses(session_factory) == ["PENDING"]
