"""
Retry Policy

Classification of errors into the engine's taxonomy and the exponential
backoff shared by the batch executor (per network call, through tenacity)
and the background sync scheduler (per failed run).

    delay(n) = min(base * 2^n, max)      n = 0, 1, 2, ...

With the defaults this yields 1000, 2000, 4000, 8000, ... capped at 30000 ms.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from querysync.core.config.constants import RETRY_BASE_DELAY_MS, RETRY_MAX_DELAY_MS
from querysync.core.exceptions import CircuitHaltedError, QuerySyncError


def backoff_delay_ms(
    retry_count: int,
    base_delay_ms: int = RETRY_BASE_DELAY_MS,
    max_delay_ms: int = RETRY_MAX_DELAY_MS,
) -> int:
    """Delay before retry number ``retry_count`` (0-based)."""
    return min(base_delay_ms * (2 ** max(retry_count, 0)), max_delay_ms)


def is_retryable(exc: BaseException) -> bool:
    """
    Classify an exception.

    Transient: engine errors flagged retryable, timeouts, connection errors
    and unclassified exceptions. Non-retryable: engine errors that are not
    flagged (validation, auth, not-found, halted breaker) and cancellation.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, CircuitHaltedError):
        return False
    if isinstance(exc, QuerySyncError):
        return exc.retryable
    return True


def create_retry_decorator(
    max_attempts: int = 3,
    base_delay_ms: int = RETRY_BASE_DELAY_MS,
    max_delay_ms: int = RETRY_MAX_DELAY_MS,
    sleep: Callable[[float], Awaitable[None]] | None = None,
):
    """
    Build a tenacity retry decorator for coroutine functions.

    Only transient errors (see is_retryable) are retried; the last error is
    re-raised once attempts are exhausted.
    """
    std_logger = logging.getLogger(__name__)  # Tenacity needs std lib logger

    extra = {"sleep": sleep} if sleep is not None else {}
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay_ms / 1000, max=max_delay_ms / 1000),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
        **extra,
    )
