"""Shared logger helpers.

Hey future me - use these instead of ad-hoc timing/health logging so every worker
and every download produces the same event names:

    async with log_operation(logger, "download_job", job_id=job.id, type="mp3"):
        await run()

    log_worker_health(logger, "queue_maintenance", cycles_completed=10, errors_total=0,
                      uptime_seconds=100.0)
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[None]:
    """Log ``{operation}.started`` / ``.completed`` / ``.failed`` with duration_ms.

    Exceptions are logged with traceback and re-raised. Cancellation is logged
    as ``{operation}.cancelled`` at INFO, since pausing or cancelling a job is
    a normal user action, and re-raised as well.
    """
    start = time.monotonic()
    logger.info(f"{operation}.started", extra=context)

    try:
        yield
    except BaseException as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        if isinstance(e, Exception):
            logger.error(
                f"{operation}.failed",
                extra={
                    **context,
                    "duration_ms": duration_ms,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
        else:
            logger.info(
                f"{operation}.cancelled",
                extra={**context, "duration_ms": duration_ms},
            )
        raise
    else:
        logger.info(
            f"{operation}.completed",
            extra={**context, "duration_ms": int((time.monotonic() - start) * 1000)},
        )


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health status in a consistent format.

    Call this every N cycles from long-running workers.
    """
    log_data: dict[str, Any] = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)
