"""Queue recovery after a restart, plus retention of finished jobs."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.application.workers.queue_manager import QueueManager
from tubevault.domain.entities import DownloadStatus
from tubevault.infrastructure.persistence import QueueJobRepository

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """What recover() found and did."""

    reset_count: int = 0
    pending_count: int = 0
    scheduled: bool = False
    error: str | None = None


# Hey future me - a PROCESSING row at startup can only mean the previous process died mid-job,
# because the active task table always starts empty. We reset those rows to PENDING (progress 0)
# and let the scheduler pick them up again after a short delay, so the app finishes booting first.
# Running recover() twice in a row is harmless: the second run finds nothing to reset.
class QueueRecoveryService:
    """Resets interrupted jobs and prunes old queue history."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue_manager: QueueManager,
        recovery_delay_seconds: float = 2.0,
        completed_retention_days: int = 7,
        failed_retention_days: int = 30,
    ) -> None:
        self._session_factory = session_factory
        self._queue_manager = queue_manager
        self._recovery_delay = recovery_delay_seconds
        self._completed_retention = timedelta(days=completed_retention_days)
        self._failed_retention = timedelta(days=failed_retention_days)
        self._delayed_schedule: asyncio.Task[None] | None = None

    async def recover(self) -> RecoveryReport:
        """Reset interrupted jobs and schedule pending work. Never raises."""
        try:
            async with self._session_factory() as session:
                repo = QueueJobRepository(session)
                reset_count = await repo.reset_processing()
                counts = await repo.count_by_status()
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("queue.recovery_failed")
            return RecoveryReport(error=str(e))

        report = RecoveryReport(
            reset_count=reset_count,
            pending_count=counts[DownloadStatus.PENDING],
        )
        if report.pending_count:
            if self._delayed_schedule is None or self._delayed_schedule.done():
                self._delayed_schedule = asyncio.create_task(self._schedule_later())
            report.scheduled = True

        logger.info(
            "queue.recovered",
            extra={
                "reset_processing": report.reset_count,
                "pending": report.pending_count,
                "paused": counts[DownloadStatus.PAUSED],
                "completed": counts[DownloadStatus.COMPLETED],
                "failed": counts[DownloadStatus.FAILED],
            },
        )
        return report

    async def _schedule_later(self) -> None:
        await asyncio.sleep(self._recovery_delay)
        await self._queue_manager.schedule()

    async def cleanup_completed_queue(self) -> dict[str, int]:
        """Delete completed jobs past completed retention and failed jobs past failed retention."""
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            repo = QueueJobRepository(session)
            completed = await repo.delete_finished_before(
                [DownloadStatus.COMPLETED, DownloadStatus.PARTIALLY_COMPLETED],
                now - self._completed_retention,
            )
            failed = await repo.delete_finished_before(
                [DownloadStatus.FAILED], now - self._failed_retention
            )
            await session.commit()

        if completed or failed:
            logger.info(
                "queue.history_pruned",
                extra={"completed_deleted": completed, "failed_deleted": failed},
            )
        return {"completed_deleted": completed, "failed_deleted": failed}

    async def close(self) -> None:
        """Cancel a still-waiting delayed schedule."""
        task, self._delayed_schedule = self._delayed_schedule, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
