from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from syncbridge.core.config import get_settings
from syncbridge.core.errors import RetryableTransportError
from syncbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, RetryableTransportError)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Total attempts, including the first; a policy of 1 never retries.
    max_attempts: int
    backoff_ms: int
    jitter: bool = True
    timeout_ms: int | None = None

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff after the given (1-based) failed attempt.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        if not self.jitter:
            return base
        return base * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.backfill_page_max_attempts,
        backoff_ms=settings.backfill_retry_backoff_ms,
        jitter=settings.backfill_retry_jitter,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Sleep = asyncio.sleep,
    counter: str = "external_retries_total",
) -> Any:
    # Retry helper with backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            if policy.timeout_ms:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter(counter)
            delay = policy.delay_s(attempt)
            logger.info("retrying_after_transient_failure", extra={"attempt": attempt, "delay_s": delay})
            await sleep(delay)
            attempt += 1


class MinIntervalGate:
    """Spaces successive callers at least ``interval_s`` apart.

    Waiting suspends only the awaiting coroutine, so other integrations keep
    running while one backfill respects a source's rate limit.
    """

    def __init__(
        self,
        interval_s: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.interval_s = max(0.0, interval_s)
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        async with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last is not None and self.interval_s > 0:
                remaining = self.interval_s - (now - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last = now
            return waited

    def with_interval(self, interval_s: float) -> "MinIntervalGate":
        return MinIntervalGate(interval_s, clock=self._clock, sleep=self._sleep)
