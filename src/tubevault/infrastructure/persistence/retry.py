# Hey future me - SQLite allows ONE writer at a time. The downloader writes progress while the
# API enqueues and the scheduler flips statuses, so "database is locked" WILL happen under load.
# Locks are temporary: wait a bit, retry, done.
#
# Decorate the method that OPENS the session scope, not a repository method that runs inside
# someone else's transaction - a retry has to start a fresh transaction to be meaningful.
#
# USAGE:
#   @with_db_retry(max_attempts=3)
#   async def _persist_progress(self, job_id: str, percent: int) -> bool:
#       async with self._session_factory() as session:
#           ...
"""Database retry utilities for handling SQLite lock errors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class DatabaseLockMetrics:
    """Process-wide counters of lock retries, exposed on the health endpoint."""

    _instance: DatabaseLockMetrics | None = None

    def __init__(self) -> None:
        self.lock_retries: int = 0
        self.lock_failures: int = 0

    @classmethod
    def get_instance(cls) -> DatabaseLockMetrics:
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get_stats(self) -> dict[str, Any]:
        return {
            "lock_retries": self.lock_retries,
            "lock_failures": self.lock_failures,
        }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        self.lock_retries = 0
        self.lock_failures = 0


def is_lock_error(exception: BaseException) -> bool:
    """Check if an exception is a retryable SQLite lock error."""
    if not isinstance(exception, OperationalError):
        return False
    error_msg = str(exception).lower()
    return "locked" in error_msg or "busy" in error_msg


def with_db_retry(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async database operation on lock errors with exponential backoff.

    Only "database is locked"/"busy" errors are retried. Any other
    OperationalError is raised immediately.

    Args:
        max_attempts: Maximum attempts including the first one
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for the delay
        backoff_factor: Multiplier applied to the delay after each retry
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            metrics = DatabaseLockMetrics.get_instance()
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    if not is_lock_error(e):
                        raise
                    if attempt >= max_attempts:
                        metrics.lock_failures += 1
                        logger.error(
                            "Database locked after %d attempts, giving up: %s",
                            max_attempts,
                            func.__qualname__,
                        )
                        raise
                    metrics.lock_retries += 1
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        delay,
                        func.__qualname__,
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise RuntimeError("Unexpected state in retry decorator")

        return wrapper

    return decorator
