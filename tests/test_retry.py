"""Backoff schedule and retry combinators."""

import asyncio

import pytest

from conftest import AsyncSleepRecorder, SleepRecorder
from orderpay.common.errors import RetryExhausted
from orderpay.common.retry import RetryPolicy, retry_async, retry_call


class Flaky:
    def __init__(self, failures: int, exc_type=ConnectionError) -> None:
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"failure {self.calls}")
        return "ok"


def test_default_policy_backs_off_one_two_seconds():
    assert list(RetryPolicy().delays()) == [1.0, 2.0]
    assert RetryPolicy(max_attempts=4).delay_for(3) == 4.0


def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_retry_call_recovers_after_transient_failures():
    sleep = SleepRecorder()
    fn = Flaky(failures=2)

    assert retry_call(fn, RetryPolicy(), retry_on=(ConnectionError,), dependency="test", sleep=sleep) == "ok"
    assert fn.calls == 3
    assert sleep.calls == [1.0, 2.0]


def test_retry_call_exhaustion_keeps_last_error():
    sleep = SleepRecorder()
    fn = Flaky(failures=10)

    with pytest.raises(RetryExhausted) as excinfo:
        retry_call(fn, RetryPolicy(), retry_on=(ConnectionError,), dependency="test", sleep=sleep)

    assert excinfo.value.attempts == 3
    assert str(excinfo.value.last_error) == "failure 3"
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    # No sleep after the final attempt.
    assert sleep.calls == [1.0, 2.0]


def test_retry_call_does_not_retry_other_errors():
    sleep = SleepRecorder()
    fn = Flaky(failures=1, exc_type=KeyError)

    with pytest.raises(KeyError):
        retry_call(fn, RetryPolicy(), retry_on=(ConnectionError,), dependency="test", sleep=sleep)
    assert fn.calls == 1
    assert sleep.calls == []


def test_retry_async_uses_async_sleep():
    sleep = AsyncSleepRecorder()
    fn = Flaky(failures=1)

    async def call():
        return fn()

    result = asyncio.run(
        retry_async(call, RetryPolicy(), retry_on=(ConnectionError,), dependency="test", sleep=sleep)
    )
    assert result == "ok"
    assert sleep.calls == [1.0]


def test_retry_async_exhaustion():
    sleep = AsyncSleepRecorder()

    async def always_fails():
        raise ConnectionError("down")

    with pytest.raises(RetryExhausted):
        asyncio.run(
            retry_async(always_fails, RetryPolicy(), retry_on=(ConnectionError,), dependency="test", sleep=sleep)
        )
    assert sleep.calls == [1.0, 2.0]
