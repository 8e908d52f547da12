"""Queue maintenance worker.

Hey future me - the scheduler is self-sustaining (every finished task re-invokes schedule()), so
this loop is the safety net, not the engine. Every tick it calls schedule() to pick up anything a
missed callback or a DB hiccup left behind. The first tick waits initial_delay_seconds, the same
grace period recovery gives a freshly booted app. Once per cleanup interval it also prunes old queue
history and trims the temporary file cache.
"""

import asyncio
import contextlib
import logging
import time
from typing import Any

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.application.workers.queue_manager import QueueManager
from tubevault.application.workers.queue_recovery import QueueRecoveryService
from tubevault.infrastructure.observability import log_worker_health

logger = logging.getLogger(__name__)

HEALTH_LOG_EVERY_CYCLES = 60


class QueueMaintenanceWorker:
    """Periodic re-scheduling and retention housekeeping."""

    def __init__(
        self,
        queue_manager: QueueManager,
        recovery: QueueRecoveryService,
        cache: FileCacheService | None = None,
        interval_seconds: float = 10,
        cleanup_interval_seconds: float = 86400,
        initial_delay_seconds: float = 0,
    ) -> None:
        self._queue_manager = queue_manager
        self._recovery = recovery
        self._cache = cache
        self._interval = interval_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._initial_delay = initial_delay_seconds

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._last_cleanup: float | None = None

        self._cycles_completed = 0
        self._errors_total = 0
        self._start_time = time.time()
        self._stats: dict[str, int | str | None] = {
            "jobs_dispatched": 0,
            "cleanups_run": 0,
            "last_cycle_at": None,
            "last_error": None,
        }

    async def start(self) -> None:
        """Start the maintenance loop as a background task."""
        if self._running:
            logger.warning("QueueMaintenanceWorker already running")
            return

        self._running = True
        self._start_time = time.time()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "worker.started",
            extra={
                "worker": "queue_maintenance",
                "interval_seconds": self._interval,
                "cleanup_interval_seconds": self._cleanup_interval,
                "initial_delay_seconds": self._initial_delay,
            },
        )

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        logger.info(
            "worker.stopped",
            extra={
                "worker": "queue_maintenance",
                "cycles_completed": self._cycles_completed,
                "errors_total": self._errors_total,
                "uptime_seconds": round(time.time() - self._start_time, 2),
            },
        )

    def get_status(self) -> dict[str, Any]:
        """Current worker status for the health endpoint."""
        return {
            "name": "Queue Maintenance",
            "running": self._running,
            "status": "active" if self._running else "stopped",
            "interval_seconds": self._interval,
            "stats": self._stats.copy(),
        }

    async def run_once(self) -> None:
        """One maintenance cycle: schedule, then prune if the cleanup interval elapsed."""
        dispatched = await self._queue_manager.schedule()
        self._stats["jobs_dispatched"] = int(self._stats["jobs_dispatched"] or 0) + dispatched

        now = time.monotonic()
        if self._last_cleanup is None or now - self._last_cleanup >= self._cleanup_interval:
            self._last_cleanup = now
            await self._recovery.cleanup_completed_queue()
            if self._cache is not None:
                await self._cache.cleanup_temporary()
            self._stats["cleanups_run"] = int(self._stats["cleanups_run"] or 0) + 1

    async def _run_loop(self) -> None:
        if self._initial_delay > 0:
            try:
                await asyncio.sleep(self._initial_delay)
            except asyncio.CancelledError:
                return

        while self._running:
            try:
                await self.run_once()
                self._cycles_completed += 1
                self._stats["last_cycle_at"] = time.strftime("%Y-%m-%dT%H:%M:%S")

                if self._cycles_completed % HEALTH_LOG_EVERY_CYCLES == 0:
                    log_worker_health(
                        logger=logger,
                        worker_name="queue_maintenance",
                        cycles_completed=self._cycles_completed,
                        errors_total=self._errors_total,
                        uptime_seconds=time.time() - self._start_time,
                        extra_stats={
                            "active_jobs": self._queue_manager.active_count,
                            "jobs_dispatched": self._stats["jobs_dispatched"],
                        },
                    )
            except Exception as e:
                # Keep the loop alive, the next tick tries again
                self._errors_total += 1
                self._stats["last_error"] = str(e)
                logger.error(
                    "queue_maintenance.loop_error",
                    exc_info=True,
                    extra={"error_type": type(e).__name__, "cycle": self._cycles_completed},
                )

            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
