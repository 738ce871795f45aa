"""Concurrency-safe allocation of per-scope serial numbers.

Each call is a single `INSERT ... ON CONFLICT DO UPDATE ... RETURNING` in its
own short transaction. The database row lock taken by the upsert serializes
concurrent callers on the same scope key, so two callers can never observe the
same value. A failed order write after allocation leaves a gap, never a
duplicate.
"""

import time
from typing import Callable

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError

from orderpay.common.config import settings
from orderpay.common.errors import AllocationConflict, RetryExhausted
from orderpay.common.logging import logger
from orderpay.common.metrics import sequence_allocations_total
from orderpay.common.retry import RetryPolicy, retry_call
from orderpay.common.tracing import tracer
from orderpay.services.sequencing.models import SequenceCounter


_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def increment_statement(dialect_name: str, scope_key: str):
    """Build the atomic upsert-and-increment for `scope_key`."""

    try:
        insert = _UPSERT_DIALECTS[dialect_name]
    except KeyError:
        raise NotImplementedError(f"no atomic upsert for dialect {dialect_name!r}") from None
    table = SequenceCounter.__table__
    stmt = insert(table).values(scope_key=scope_key, last_value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.scope_key],
        set_={"last_value": table.c.last_value + 1, "updated_at": func.now()},
    )
    return stmt.returning(table.c.last_value)


class SequenceAllocator:
    """Hands out strictly increasing integers per scope key."""

    def __init__(
        self,
        session_factory,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.policy = policy or RetryPolicy(
            max_attempts=settings.allocator_max_attempts,
            base_delay=settings.allocator_base_delay_seconds,
        )
        self.sleep = sleep

    def _increment(self, scope_key: str) -> int:
        with self.session_factory() as db:
            stmt = increment_statement(db.get_bind().dialect.name, scope_key)
            value = db.execute(stmt).scalar_one()
            db.commit()
            return value

    def next_value(self, scope_key: str) -> int:
        """Return the next value for `scope_key`, starting at 1.

        Raises `AllocationConflict` when the increment keeps failing with
        transient storage errors; callers may retry the whole operation.
        """

        if not scope_key:
            raise ValueError("scope_key must be non-empty")
        with tracer.start_as_current_span("sequence.next_value") as span:
            span.set_attribute("orderpay.scope_key", scope_key)
            try:
                value = retry_call(
                    lambda: self._increment(scope_key),
                    self.policy,
                    retry_on=(OperationalError,),
                    dependency="sequence",
                    sleep=self.sleep,
                )
            except RetryExhausted as exc:
                logger.error("sequence allocation failed scope_key=%s error=%s", scope_key, exc.last_error)
                raise AllocationConflict(scope_key, exc.attempts) from exc
        stream = scope_key.split(":", 1)[0] if ":" in scope_key else "INVOICE"
        sequence_allocations_total.labels(service=settings.service_name, stream=stream).inc()
        logger.debug("sequence allocated scope_key=%s value=%s", scope_key, value)
        return value
