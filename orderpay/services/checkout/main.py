"""HTTP surface for order placement and payment callbacks.

Callers arrive already authenticated; the upstream auth layer forwards the user
as `X-User-Id` / `X-Business-Account` headers.
"""

import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from orderpay.common.config import settings
from orderpay.common.db import SessionLocal
from orderpay.common.errors import OrderPayError
from orderpay.common.events import KafkaBus
from orderpay.common.logging import configure_logging, log_context, logger
from orderpay.common.metrics import http_requests_total, metrics_response
from orderpay.common.outbox import outbox_publisher
from orderpay.common.startup import log_startup_config
from orderpay.common.tracing import instrument_app, setup_tracing
from orderpay.services.orders.schemas import OrderCreateRequest, OrderResponse, UserContext
from orderpay.services.orders.service import OrderLedger
from orderpay.services.payments.gateway import RazorpayClient
from orderpay.services.payments.schemas import (
    PaymentAttemptResponse,
    PaymentCallbackRequest,
    PaymentCapturedOrderUpdateFailed,
    PaymentFailureRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
)
from orderpay.services.payments.service import PaymentReconciler
from orderpay.services.sequencing.identifiers import InvoiceNumberGenerator, OrderIdentifierGenerator
from orderpay.services.sequencing.service import SequenceAllocator


def build_services(session_factory, gateway: RazorpayClient | None = None) -> tuple[OrderLedger, PaymentReconciler]:
    """Wire allocator, generators, ledger and reconciler over one session factory."""

    allocator = SequenceAllocator(session_factory)
    ledger = OrderLedger(
        session_factory,
        OrderIdentifierGenerator(allocator),
        InvoiceNumberGenerator(allocator),
    )
    reconciler = PaymentReconciler(session_factory, ledger, gateway or RazorpayClient())
    return ledger, reconciler


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "razorpay_key_id",
        "razorpay_key_secret",
        "business_timezone",
        "invoice_office_state_code",
        "price_check_mode",
    ],
)
ledger, reconciler = build_services(SessionLocal)
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox relay for the app's lifetime."""

    publisher_task = asyncio.create_task(outbox_publisher(SessionLocal, kafka, settings.service_name))
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="Checkout Orders & Payments", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a trace id and count every request by route and status."""

    status_code = 500
    try:
        with log_context(trace_id=request.headers.get("x-trace-id") or str(uuid4())):
            response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        route = request.scope.get("route")
        http_requests_total.labels(
            service=settings.service_name,
            route=getattr(route, "path", request.url.path),
            method=request.method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(OrderPayError)
async def domain_error_handler(_: Request, exc: OrderPayError):
    logger.info("request rejected error=%s detail=%s", type(exc).__name__, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": type(exc).__name__, "message": str(exc)},
    )


def current_user(x_user_id: str | None, x_business_account: str | None) -> UserContext:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return UserContext(
        user_id=x_user_id,
        is_business_account=(x_business_account or "").lower() in ("1", "true", "yes"),
    )


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject operator calls without the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.post("/orders")
def create_order(
    req: OrderCreateRequest,
    x_user_id: str | None = Header(default=None),
    x_business_account: str | None = Header(default=None),
):
    """Persist an order with its items; returns the generated order id."""

    user = current_user(x_user_id, x_business_account)
    order = ledger.create_order(req, req.address_id, user)
    return {"success": True, "id": order.order_id, "order": OrderResponse.model_validate(order)}


@app.get("/orders")
def list_orders(x_user_id: str | None = Header(default=None)):
    user = current_user(x_user_id, None)
    orders = ledger.list_orders(user.user_id)
    return {"success": True, "orders": [OrderResponse.model_validate(order) for order in orders]}


@app.get("/orders/{order_id}")
def get_order(order_id: str, x_user_id: str | None = Header(default=None)):
    user = current_user(x_user_id, None)
    return {"success": True, "order": OrderResponse.model_validate(ledger.get_order(order_id, user.user_id))}


@app.post("/payments/intents", response_model=PaymentIntentResponse)
async def create_payment_intent(
    req: PaymentIntentRequest,
    x_user_id: str | None = Header(default=None),
):
    """Open a gateway order for the checkout modal."""

    user = current_user(x_user_id, None)
    return await reconciler.create_intent(req.order_id, user)


@app.post("/payments/callback")
async def payment_callback(req: PaymentCallbackRequest, x_user_id: str | None = Header(default=None)):
    """Verify the signed callback and link the payment to its order.

    A captured payment whose order update failed answers 202 with the payment id
    so the customer can quote it to support.
    """

    user = current_user(x_user_id, None)
    outcome = await reconciler.handle_callback(req, req.update, user_id=user.user_id)
    if isinstance(outcome, PaymentCapturedOrderUpdateFailed):
        return JSONResponse(
            status_code=202,
            content={"success": True, "warning": True, "outcome": outcome.model_dump()},
        )
    return {"success": True, "outcome": outcome}


@app.post("/payments/{gateway_order_id}/abandon", response_model=PaymentAttemptResponse)
def abandon_payment(gateway_order_id: str, x_user_id: str | None = Header(default=None)):
    user = current_user(x_user_id, None)
    return PaymentAttemptResponse.model_validate(reconciler.abandon(gateway_order_id, user.user_id))


@app.post("/payments/{gateway_order_id}/failed", response_model=PaymentAttemptResponse)
def payment_failed(gateway_order_id: str, req: PaymentFailureRequest, x_user_id: str | None = Header(default=None)):
    user = current_user(x_user_id, None)
    return PaymentAttemptResponse.model_validate(
        reconciler.record_failure(gateway_order_id, req.reason, user_id=user.user_id)
    )


@app.get("/internal/reconciliation")
def pending_reconciliation(limit: int = 100, x_api_key: str | None = Header(default=None)):
    """Captured payments waiting for an operator to link them to orders."""

    enforce_api_key(x_api_key)
    attempts = reconciler.list_escalations(limit=limit)
    return {
        "pending_count": len(attempts),
        "attempts": [PaymentAttemptResponse.model_validate(attempt) for attempt in attempts],
    }


@app.post("/internal/reconciliation/{attempt_id}/resolve")
def resolve_reconciliation(attempt_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return {"success": True, "outcome": reconciler.resolve_escalation(attempt_id)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
