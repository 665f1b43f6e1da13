from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from m365assess.core.config import Settings, get_settings
from m365assess.core.errors import GraphApiError, GraphTransientError


logger = logging.getLogger(__name__)

# Failures worth another attempt regardless of status code. asyncio.TimeoutError
# is a separate class before 3.11.
TRANSIENT_EXCEPTIONS = (asyncio.TimeoutError, TimeoutError, OSError, httpx.TransportError, GraphTransientError)
# Throttling and gateway failures reported through an exception's ``status``.
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
# Statuses where Graph answered without applying a write.
REJECTED_WRITE_STATUSES = frozenset({429, 500, 502, 503, 504})


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    return getattr(exc, "status", None) in RETRYABLE_STATUSES


def is_rejected_write(exc: Exception) -> bool:
    # A timeout or dropped connection may hide an applied write.
    return isinstance(exc, GraphApiError) and exc.status in REJECTED_WRITE_STATUSES


@dataclass(frozen=True)
class RetryPolicy:
    # Per-attempt timeout, attempt cap, and base delay for exponential backoff.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Jittered exponential backoff; attempt is 1-based.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "external_call",
) -> Any:
    """Run ``func`` with a per-attempt timeout, retrying transient failures.

    Non-transient errors and the last transient one propagate unchanged.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or is_transient
    max_attempts = max(policy.max_attempts, 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= max_attempts or not should_retry(exc):
                raise
            sleep_s = policy.delay_s(attempt)
            logger.warning(
                "external_retry operation=%s attempt=%s error=%s sleep_s=%.2f",
                operation,
                attempt,
                type(exc).__name__,
                sleep_s,
            )
            await asyncio.sleep(sleep_s)
    raise AssertionError("unreachable")
