"""Queue Manager - admission, scheduling and control of download jobs.

Hey future me - this is the ONE owner of "what is running right now". The active table
(`_tasks`, job id → asyncio.Task) lives on the instance, created once in the lifespan and
shared via app.state. No module globals, so tests can build as many managers as they like.

Scheduling rules:
1. schedule() is serialized by an asyncio.Lock. Two callers (API enqueue + a finishing task)
   can't both see "1 free slot" and admit two jobs.
2. Admission is FIFO by created_at. A job is claimed with a conditional UPDATE
   (PENDING → PROCESSING); if someone paused/cancelled it in between, the claim just misses.
3. When a task settles (success, failure, cancel, timeout) its done-callback removes it from
   the table and calls schedule() again. That's what keeps the queue draining on its own.

Pause/cancel are REAL: the DB row is updated first, then the task is cancelled and the
job's yt-dlp process is killed right away (the extractor's finally block would get it too,
but only once the cancelled task gets to run again).
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.application.workers.downloader import Downloader
from tubevault.domain.entities import (
    CANCELLED_MESSAGE,
    DownloadStatus,
    DownloadType,
    JobOptions,
    PlaylistDownloadOptions,
    QueueJob,
    SingleDownloadOptions,
    parse_job_options,
)
from tubevault.domain.exceptions import InvalidStateException, ValidationException
from tubevault.domain.ports import IStatusBroadcaster
from tubevault.infrastructure.observability import log_operation, set_correlation_id
from tubevault.infrastructure.persistence import (
    FileRepository,
    QueueJobRepository,
    with_db_retry,
)

logger = logging.getLogger(__name__)

FINISHED_STATUSES = (
    DownloadStatus.COMPLETED,
    DownloadStatus.PARTIALLY_COMPLETED,
    DownloadStatus.FAILED,
)
NON_TERMINAL_STATUSES = (
    DownloadStatus.PENDING,
    DownloadStatus.PROCESSING,
    DownloadStatus.PAUSED,
)
RECENT_GROUPS_DAYS = 7
RECENT_GROUPS_LIMIT = 10


def timeout_message(seconds: int) -> str:
    return f"Timed out after {seconds} seconds"


class QueueManager:
    """Bounded-concurrency FIFO scheduler over the persisted download queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        downloader: Downloader,
        broadcaster: IStatusBroadcaster,
        max_concurrent: int = 1,
        job_timeout_seconds: int = 3600,
    ) -> None:
        if max_concurrent < 1:
            raise ValidationException("max_concurrent must be >= 1")
        self._session_factory = session_factory
        self._downloader = downloader
        self._broadcaster = broadcaster
        self._max_concurrent = max_concurrent
        self._job_timeout = job_timeout_seconds

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._schedule_lock = asyncio.Lock()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    # =========================================================================
    # Admission
    # =========================================================================

    async def enqueue(
        self,
        url: str,
        download_type: DownloadType | str,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> QueueJob:
        """Validate and persist a new PENDING job, then kick the scheduler.

        Raises:
            ValidationException: Empty url, unknown type or options that don't fit the type.
                Nothing is written in that case.
        """
        if not url or not url.strip():
            raise ValidationException("url must not be empty")
        try:
            job_type = DownloadType(download_type)
        except ValueError as e:
            raise ValidationException(f"Unsupported download type: {download_type}") from e

        raw = (
            options.to_dict()
            if isinstance(options, (SingleDownloadOptions, PlaylistDownloadOptions))
            else options
        )
        job = QueueJob.create(url, job_type, parse_job_options(job_type, raw))

        async with self._session_factory() as session:
            await QueueJobRepository(session).add(job)
            await session.commit()

        logger.info(
            "queue.job_enqueued",
            extra={"job_id": job.id, "type": job_type.value, "url": job.url},
        )
        await self._broadcaster.emit_status(job.id, DownloadStatus.PENDING, 0)
        await self.schedule()
        return job

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule(self) -> int:
        """Admit the oldest PENDING jobs into free slots.

        Safe to call any time from anywhere. Returns the number of jobs dispatched.
        """
        if self._closed:
            return 0

        async with self._schedule_lock:
            free_slots = self._max_concurrent - len(self._tasks)
            if free_slots <= 0:
                return 0
            try:
                claimed = await self._claim_pending(free_slots)
            except SQLAlchemyError:
                # Maintenance worker retries on its next tick
                logger.exception("queue.schedule_failed")
                return 0

            for job_id in claimed:
                self._spawn(job_id)

        if claimed:
            logger.info(
                "queue.jobs_dispatched",
                extra={"count": len(claimed), "active": len(self._tasks)},
            )
        return len(claimed)

    @with_db_retry(max_attempts=3)
    async def _claim_pending(self, limit: int) -> list[str]:
        claimed: list[str] = []
        async with self._session_factory() as session:
            repo = QueueJobRepository(session)
            for job_id in await repo.list_pending_ids(limit):
                if job_id in self._tasks:
                    continue
                if await repo.claim(job_id):
                    claimed.append(job_id)
            await session.commit()
        return claimed

    def _spawn(self, job_id: str) -> None:
        task = asyncio.create_task(self._run_job(job_id), name=f"download-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(partial(self._on_task_done, job_id))

    def _on_task_done(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not self._closed:
            self._run_in_background(self.schedule())

    def _run_in_background(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_job(self, job_id: str) -> None:
        """Dispatch wrapper. Never lets an exception escape the task."""
        set_correlation_id(job_id)
        try:
            async with log_operation(logger, "download_job", job_id=job_id):
                if self._job_timeout > 0:
                    await asyncio.wait_for(
                        self._downloader.process(job_id), timeout=self._job_timeout
                    )
                else:
                    await self._downloader.process(job_id)
        except TimeoutError:
            await self._fail_timed_out(job_id)
        except asyncio.CancelledError:
            # Paused, cancelled or shutting down. Whoever cancelled us already wrote the row.
            raise
        except Exception:
            logger.exception("queue.dispatch_error", extra={"job_id": job_id})

    async def _fail_timed_out(self, job_id: str) -> None:
        message = timeout_message(self._job_timeout)
        try:
            async with self._session_factory() as session:
                matched = await QueueJobRepository(session).transition(
                    job_id, [DownloadStatus.PROCESSING], DownloadStatus.FAILED, error=message
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("queue.timeout_update_failed", extra={"job_id": job_id})
            return
        if matched:
            logger.warning(
                "queue.job_timed_out",
                extra={"job_id": job_id, "timeout_seconds": self._job_timeout},
            )
            await self._broadcaster.emit_status(
                job_id, DownloadStatus.FAILED, 0, {"error": message}
            )
            await self._broadcaster.emit_error(job_id, message)

    async def _stop_job(self, job_id: str) -> bool:
        """Cancel the job's task and kill its process. Returns True if it was running."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        await self._downloader.kill(job_id)
        return True

    async def join(self) -> None:
        """Wait until nothing is running and nothing admissible is left."""
        while self._tasks or self._background:
            await asyncio.gather(
                *self._tasks.values(), *self._background, return_exceptions=True
            )

    async def shutdown(self) -> None:
        """Stop admitting and cancel in-flight jobs.

        Their rows stay PROCESSING on purpose, recovery resets them on next start.
        """
        self._closed = True
        pending = [*self._tasks.values(), *self._background]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("queue.shutdown", extra={"cancelled_tasks": len(pending)})

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, job_id: str) -> QueueJob | None:
        async with self._session_factory() as session:
            return await QueueJobRepository(session).get_by_id(job_id)

    async def list_jobs(
        self, status: DownloadStatus | None = None, limit: int = 100
    ) -> list[QueueJob]:
        """Newest first, optionally filtered by one status."""
        statuses = [status] if status else list(DownloadStatus)
        async with self._session_factory() as session:
            return await QueueJobRepository(session).list_by_status(
                statuses, limit=limit, newest_first=True
            )

    async def list_pending(self) -> list[QueueJob]:
        async with self._session_factory() as session:
            return await QueueJobRepository(session).list_by_status([DownloadStatus.PENDING])

    async def list_processing(self) -> list[QueueJob]:
        async with self._session_factory() as session:
            return await QueueJobRepository(session).list_by_status(
                [DownloadStatus.PROCESSING]
            )

    async def list_recent_completed(self, limit: int = 10) -> list[QueueJob]:
        async with self._session_factory() as session:
            return await QueueJobRepository(session).list_by_status(
                [DownloadStatus.COMPLETED, DownloadStatus.PARTIALLY_COMPLETED],
                limit=limit,
                newest_first=True,
            )

    async def get_queue_summary(self) -> dict[str, Any]:
        """Per-status counts plus the file groups touched in the last week."""
        since = datetime.now(UTC) - timedelta(days=RECENT_GROUPS_DAYS)
        async with self._session_factory() as session:
            counts = await QueueJobRepository(session).count_by_status()
            recent_groups = await FileRepository(session).recent_groups(
                since, limit=RECENT_GROUPS_LIMIT
            )

        summary: dict[str, Any] = {status.value: count for status, count in counts.items()}
        summary["total"] = sum(counts.values())
        summary["active"] = self.active_count
        summary["max_concurrent"] = self._max_concurrent
        summary["recent_groups"] = recent_groups
        return summary

    # =========================================================================
    # Control
    # =========================================================================

    async def cancel(self, job_id: str) -> QueueJob:
        """Mark a non-terminal job FAILED("Cancelled by user") and stop its work.

        Raises:
            EntityNotFoundException: Unknown job id
            InvalidStateException: Job already finished
        """
        async with self._session_factory() as session:
            repo = QueueJobRepository(session)
            job = await repo.get_required(job_id)
            job.cancel()
            matched = await repo.transition(
                job_id, NON_TERMINAL_STATUSES, DownloadStatus.FAILED, error=CANCELLED_MESSAGE
            )
            await session.commit()
        if not matched:
            raise InvalidStateException(f"Job {job_id} finished before it could be cancelled")

        was_running = await self._stop_job(job_id)
        logger.info(
            "queue.job_cancelled", extra={"job_id": job_id, "was_running": was_running}
        )
        await self._broadcaster.emit_status(
            job_id, DownloadStatus.FAILED, job.progress, {"error": CANCELLED_MESSAGE}
        )
        await self._broadcaster.emit_error(job_id, CANCELLED_MESSAGE)
        return job

    async def pause(self, job_id: str) -> QueueJob:
        """PENDING/PROCESSING → PAUSED, keeping progress. A running task is stopped.

        Raises:
            EntityNotFoundException: Unknown job id
            InvalidStateException: Job is not pending or processing
        """
        async with self._session_factory() as session:
            repo = QueueJobRepository(session)
            job = await repo.get_required(job_id)
            job.pause()
            matched = await repo.transition(
                job_id,
                [DownloadStatus.PENDING, DownloadStatus.PROCESSING],
                DownloadStatus.PAUSED,
            )
            await session.commit()
        if not matched:
            raise InvalidStateException(f"Job {job_id} changed state before it could be paused")

        was_running = await self._stop_job(job_id)
        logger.info("queue.job_paused", extra={"job_id": job_id, "was_running": was_running})
        await self._broadcaster.emit_status(job_id, DownloadStatus.PAUSED, job.progress)
        return job

    async def resume(self, job_id: str) -> QueueJob:
        """PAUSED → PENDING and let the scheduler pick it up.

        Raises:
            EntityNotFoundException: Unknown job id
            InvalidStateException: Job is not paused
        """
        async with self._session_factory() as session:
            repo = QueueJobRepository(session)
            job = await repo.get_required(job_id)
            job.resume()
            matched = await repo.transition(
                job_id, [DownloadStatus.PAUSED], DownloadStatus.PENDING
            )
            await session.commit()
        if not matched:
            raise InvalidStateException(f"Job {job_id} changed state before it could be resumed")

        logger.info("queue.job_resumed", extra={"job_id": job_id})
        await self._broadcaster.emit_status(job_id, DownloadStatus.PENDING, job.progress)
        await self.schedule()
        return job

    async def pause_all(self) -> int:
        """Pause every pending and processing job. Returns the number paused."""
        async with self._session_factory() as session:
            count = await QueueJobRepository(session).bulk_transition(
                [DownloadStatus.PENDING, DownloadStatus.PROCESSING], DownloadStatus.PAUSED
            )
            await session.commit()

        for job_id in list(self._tasks):
            await self._stop_job(job_id)
        logger.info("queue.paused_all", extra={"count": count})
        return count

    async def resume_all(self) -> int:
        """Move every paused job back to PENDING. Returns the number resumed."""
        async with self._session_factory() as session:
            count = await QueueJobRepository(session).bulk_transition(
                [DownloadStatus.PAUSED], DownloadStatus.PENDING
            )
            await session.commit()

        logger.info("queue.resumed_all", extra={"count": count})
        if count:
            await self.schedule()
        return count

    async def cleanup_old(self, days_to_keep: int = 7) -> int:
        """Delete finished jobs whose last update is older than days_to_keep."""
        cutoff = datetime.now(UTC) - timedelta(days=days_to_keep)
        async with self._session_factory() as session:
            deleted = await QueueJobRepository(session).delete_finished_before(
                FINISHED_STATUSES, cutoff
            )
            await session.commit()
        logger.info("queue.cleanup_old", extra={"deleted": deleted, "days_to_keep": days_to_keep})
        return deleted
