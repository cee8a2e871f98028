from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from depositbridge.core.config import Settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, asyncio.TimeoutError, OSError, httpx.TimeoutException, httpx.NetworkError)
_MAX_JITTER = 1.5


def default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def budget_ms(self) -> int:
        # Worst-case wall time of retry_async under this policy, jitter included.
        attempts = max(self.max_attempts, 1)
        backoff = sum(self.backoff_ms * (2 ** (attempt - 1)) * _MAX_JITTER for attempt in range(1, attempts))
        return int(self.timeout_ms * attempts + backoff)


async def with_timeout(func: Callable[[], Awaitable[Any]], *, timeout_ms: int) -> Any:
    return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "external_call",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or default_retryable
    attempt = 1
    while True:
        try:
            return await with_timeout(func, timeout_ms=policy.timeout_ms)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, _MAX_JITTER)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("external_call_retry name=%s attempt=%s sleep_s=%.3f", name, attempt, sleep_s)
            await asyncio.sleep(sleep_s)
            attempt += 1
