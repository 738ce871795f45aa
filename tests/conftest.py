"""Shared fixtures: a throwaway SQLite database per test and wired services."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

import json
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from orderpay.common.db import Base
from orderpay.common.outbox import OutboxEvent  # noqa: F401
from orderpay.common.retry import RetryPolicy
from orderpay.services.orders.models import Address, Product
from orderpay.services.orders.service import OrderLedger
from orderpay.services.payments.gateway import RazorpayClient
from orderpay.services.payments.models import PaymentAttempt  # noqa: F401
from orderpay.services.payments.service import PaymentReconciler
from orderpay.services.sequencing.identifiers import InvoiceNumberGenerator, OrderIdentifierGenerator
from orderpay.services.sequencing.service import SequenceAllocator


KEY_SECRET = "test_secret"
FIXED_NOW = datetime(2025, 4, 2, 10, 15, 30, tzinfo=ZoneInfo("Asia/Kolkata"))


class SleepRecorder:
    """Stands in for time.sleep / asyncio.sleep and remembers every delay."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class AsyncSleepRecorder(SleepRecorder):
    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeGateway:
    """In-memory Razorpay API behind an httpx.MockTransport."""

    def __init__(self, payment_status: str = "captured", fail_create: bool = False) -> None:
        self.payment_status = payment_status
        self.fail_create = fail_create
        self.created: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/orders"):
            if self.fail_create:
                return httpx.Response(500, json={"error": {"description": "internal"}})
            body = json.loads(request.content)
            gateway_order_id = f"order_gw_{len(self.created) + 1}"
            self.created.append(body)
            return httpx.Response(
                200,
                json={
                    "id": gateway_order_id,
                    "amount": body["amount"],
                    "currency": body["currency"],
                    "receipt": body["receipt"],
                },
            )
        if request.method == "GET" and "/payments/" in request.url.path:
            payment_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": payment_id, "status": self.payment_status})
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> RazorpayClient:
        return RazorpayClient(
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            api_url="https://api.razorpay.test/v1",
            timeout_seconds=5,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'orderpay.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    with factory() as db:
        db.add_all(
            [
                Address(address_id="addr-1", user_id="user-1", name="Asha", city="Lucknow", state="UP"),
                Address(address_id="addr-2", user_id="user-1", name="Asha", city="Noida", state="UP"),
                Address(address_id="addr-other", user_id="user-2", name="Ravi", city="Patna", state="BR"),
                Product(product_id="prod-1", name="Notebook", price=Decimal("50.20"), tax=Decimal("18.00")),
                Product(product_id="prod-2", name="Pen", price=Decimal("10.25"), tax=Decimal("12.00")),
            ]
        )
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture()
def allocator(session_factory):
    return SequenceAllocator(session_factory, policy=RetryPolicy(max_attempts=5, base_delay=0), sleep=SleepRecorder())


@pytest.fixture()
def order_sleep():
    return SleepRecorder()


@pytest.fixture()
def ledger(session_factory, allocator, order_sleep):
    return OrderLedger(
        session_factory,
        OrderIdentifierGenerator(allocator, clock=lambda: FIXED_NOW),
        InvoiceNumberGenerator(allocator, default_state_code="09", no_segment_state_code="10"),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0),
        sleep=order_sleep,
        clock=lambda: FIXED_NOW,
        price_check_mode="enforce",
        price_tolerance=Decimal("0.01"),
    )


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def payment_sleep():
    return AsyncSleepRecorder()


@pytest.fixture()
def reconciler(session_factory, ledger, fake_gateway, payment_sleep, tmp_path):
    return PaymentReconciler(
        session_factory,
        ledger,
        fake_gateway.client(),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0),
        sleep=payment_sleep,
        clock=lambda: FIXED_NOW,
        spool_path=tmp_path / "spool.jsonl",
        currency="INR",
    )
