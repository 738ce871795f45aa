"""Bounded retry with exponential backoff.

One policy object drives both the synchronous storage paths (sequence
allocation, order persistence) and the async payment-update path.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

from orderpay.common.config import settings
from orderpay.common.errors import RetryExhausted
from orderpay.common.logging import logger
from orderpay.common.metrics import retries_total


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.backoff_multiplier < 1:
            raise ValueError("delays must be non-negative and non-decreasing")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed `attempt` (1-based): 1s, 2s, 4s, ... by default."""

        return self.base_delay * self.backoff_multiplier ** (attempt - 1)

    def delays(self) -> Iterator[float]:
        """Sleeps taken between attempts; none after the final attempt."""

        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    dependency: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `fn` until it succeeds or `policy` is exhausted.

    Only exceptions in `retry_on` are retried; anything else propagates at once.
    Exhaustion raises `RetryExhausted` chained to the last error.
    """

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt == policy.max_attempts:
                raise RetryExhausted(dependency, attempt, exc) from exc
            delay = policy.delay_for(attempt)
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            logger.warning(
                "retrying dependency=%s attempt=%s/%s backoff_s=%s error=%s",
                dependency,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            sleep(delay)
    raise AssertionError("unreachable")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    dependency: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Async twin of `retry_call`; backoff suspends only the calling task."""

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            if attempt == policy.max_attempts:
                raise RetryExhausted(dependency, attempt, exc) from exc
            delay = policy.delay_for(attempt)
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            logger.warning(
                "retrying dependency=%s attempt=%s/%s backoff_s=%s error=%s",
                dependency,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
