"""Prometheus metric definitions for order placement and payment reconciliation."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("orders_created_total", "Orders persisted with items", ["service"])
order_create_latency_seconds = Histogram(
    "order_create_latency_seconds",
    "Order creation latency seconds including identifier allocation",
    ["service"],
)
sequence_allocations_total = Counter(
    "sequence_allocations_total",
    "Sequence values handed out by the allocator",
    ["service", "stream"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
payment_intents_total = Counter("payment_intents_total", "Gateway payment intents opened", ["service"])
signature_failures_total = Counter(
    "signature_failures_total",
    "Payment callbacks rejected for a bad signature",
    ["service"],
)
payment_outcomes_total = Counter(
    "payment_outcomes_total",
    "Payment attempts reaching a terminal saga state",
    ["service", "terminal_state"],
)
reconciliation_escalations_total = Counter(
    "reconciliation_escalations_total",
    "Captured payments whose order update needed operator reconciliation",
    ["service", "channel"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
