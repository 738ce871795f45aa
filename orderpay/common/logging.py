"""Structured JSON logs tagged with the trace, order and payment in flight.

Correlation ids live in contextvars; `log_context` binds them for one request or
one relayed event and restores the previous values on exit.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from orderpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

CORRELATION_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "order_id": order_id_ctx,
    "payment_id": payment_id_ctx,
}


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in CORRELATION_FIELDS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**ids: str | None):
    """Bind `trace_id` / `order_id` / `payment_id` until the block exits; empty values are skipped."""

    tokens = []
    for field, value in ids.items():
        if value:
            var = CORRELATION_FIELDS[field]
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout from the root logger; safe to call again."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(order_id)s %(payment_id)s %(message)s",
            rename_fields={"levelname": "level"},
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)


logger = logging.getLogger("orderpay")
