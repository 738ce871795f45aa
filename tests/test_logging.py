"""Correlation ids on log records."""

import logging

from orderpay.common.logging import ContextFilter, log_context, order_id_ctx, payment_id_ctx, trace_id_ctx
from orderpay.common.startup import _safe_value


def make_record() -> logging.LogRecord:
    return logging.LogRecord("orderpay", logging.INFO, __file__, 1, "order created", None, None)


def test_log_context_binds_and_restores():
    with log_context(order_id="ODR-02042025-101530-0001", payment_id="pay_1"):
        record = make_record()
        ContextFilter().filter(record)
        with log_context(payment_id="pay_2"):
            assert payment_id_ctx.get() == "pay_2"
        assert payment_id_ctx.get() == "pay_1"

    assert record.order_id == "ODR-02042025-101530-0001"
    assert record.payment_id == "pay_1"
    assert order_id_ctx.get() == ""
    assert payment_id_ctx.get() == ""


def test_empty_ids_are_not_bound():
    token = trace_id_ctx.set("trace-1")
    try:
        with log_context(trace_id=None):
            assert trace_id_ctx.get() == "trace-1"
    finally:
        trace_id_ctx.reset(token)


def test_startup_config_hides_secrets():
    assert _safe_value("razorpay_key_secret", "shh") == "<redacted>"
    assert _safe_value("api_key", "shh") == "<redacted>"
    assert _safe_value("razorpay_key_id", "rzp_live_1") == "rzp_live_1"
    assert _safe_value("razorpay_key_id", None) == "<unset>"
    assert "hunter2" not in _safe_value("postgres_dsn", "postgresql+psycopg://app:hunter2@db:5432/orderpay")
