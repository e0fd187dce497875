"""
Retry wrapper for job store queries that hit transient database errors.

Two workers finishing jobs at the same moment, or an operator cancelling a
job the worker is updating, can produce lock contention. Such errors are
retried with exponential backoff; anything else propagates unchanged.

Recognised as transient:
- SQLite: "database is locked", SQLITE_BUSY / SQLITE_LOCKED
- PostgreSQL: deadlocks (40P01), serialization failures (40001), lock
  timeouts and dropped connections
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from core import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # seconds
DEFAULT_MAX_DELAY = 2.0  # seconds
BACKOFF_FACTOR = 2
JITTER_RATIO = 0.25

TRANSIENT_MESSAGES = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "lock timeout",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
)

TRANSIENT_SQLSTATES = frozenset({"40P01", "40001"})


class DatabaseRetryableError(Exception):
    """A transient database error persisted through every retry."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """Whether ``exc`` (or an exception it was raised from) is worth retrying."""
    message = str(exc).lower()
    if any(pattern in message for pattern in TRANSIENT_MESSAGES):
        return True
    if getattr(exc, "sqlstate", None) in TRANSIENT_SQLSTATES:
        return True
    # databases re-raises driver errors with the original as __cause__
    cause = exc.__cause__
    return cause is not None and is_retryable_database_error(cause)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for the given zero-based attempt, capped, with jitter."""
    delay = min(base_delay * BACKOFF_FACTOR**attempt, max_delay)
    jitter = delay * JITTER_RATIO * random.uniform(-1, 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying transient database errors.

    Args:
        func: Async callable, usually a bound ``Database`` method
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound on any single delay (seconds)

    Raises:
        DatabaseRetryableError: the error was still transient after the last retry
    """
    last_error: Optional[Exception] = None
    attempts = max_retries + 1

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise
            last_error = e
            metrics.DB_RETRIES_TOTAL.inc()

            if attempt == max_retries:
                logger.error(f"Database error persisted after {attempts} attempts: {e}")
                break

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"Transient database error (attempt {attempt + 1}/{attempts}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)

    raise DatabaseRetryableError(f"Database operation failed after {attempts} attempts: {last_error}")
