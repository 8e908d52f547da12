"""Repository implementations for domain entities."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tubevault.domain.entities import (
    DownloadStatus,
    DownloadType,
    FileCacheEntry,
    FileGroupType,
    MediaFile,
    QueueJob,
    parse_job_options,
)
from tubevault.domain.exceptions import EntityNotFoundException, ValidationException

from .models import (
    CacheStatsModel,
    FileCacheModel,
    FileModel,
    QueueJobModel,
    ensure_utc_aware,
    utc_now,
)


def _group_type(value: str | None) -> FileGroupType | None:
    if value is None:
        return None
    try:
        return FileGroupType(value)
    except ValueError:
        return None


# Hey future me, the queue repository deliberately exposes CONDITIONAL updates instead of a generic
# "save the entity" method! The downloader, the scheduler, cancel() and pause() can all touch the
# same row. Every write says what state it expects ("only if still processing") and returns whether
# it actually matched - that's how a late progress tick or a finishing task never overwrites a
# cancellation.
class QueueJobRepository:
    """SQLAlchemy repository for QueueJob rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: QueueJobModel) -> QueueJob:
        try:
            download_type = DownloadType(model.type)
            status = DownloadStatus(model.status)
        except ValueError as e:
            raise ValidationException(
                f"Invalid type/status '{model.type}'/'{model.status}' for job {model.id}"
            ) from e

        return QueueJob(
            id=model.id,
            url=model.url,
            type=download_type,
            status=status,
            progress=model.progress,
            error=model.error,
            options=parse_job_options(download_type, model.options)
            if model.options
            else None,
            items_total=model.items_total,
            items_completed=model.items_completed,
            file_id=model.file_id,
            created_at=ensure_utc_aware(model.created_at),
            updated_at=ensure_utc_aware(model.updated_at),
        )

    async def add(self, job: QueueJob) -> None:
        """Add a new job."""
        model = QueueJobModel(
            id=job.id,
            url=job.url,
            type=job.type.value,
            status=job.status.value,
            progress=job.progress,
            error=job.error,
            options=job.options.to_dict() if job.options else None,
            items_total=job.items_total,
            items_completed=job.items_completed,
            file_id=job.file_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
        self.session.add(model)
        await self.session.flush()

    async def get_by_id(self, job_id: str) -> QueueJob | None:
        """Get a job by ID."""
        model = await self.session.get(QueueJobModel, job_id)
        if model is None:
            return None
        return self._to_entity(model)

    async def get_required(self, job_id: str) -> QueueJob:
        """Get a job by ID or raise EntityNotFoundException."""
        job = await self.get_by_id(job_id)
        if job is None:
            raise EntityNotFoundException("QueueJob", job_id)
        return job

    async def list_by_status(
        self,
        statuses: Iterable[DownloadStatus],
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[QueueJob]:
        """List jobs in the given statuses ordered by creation time."""
        order = (
            QueueJobModel.created_at.desc()
            if newest_first
            else QueueJobModel.created_at.asc()
        )
        stmt = (
            select(QueueJobModel)
            .where(QueueJobModel.status.in_([s.value for s in statuses]))
            .order_by(order, QueueJobModel.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_pending_ids(self, limit: int) -> list[str]:
        """Oldest PENDING job ids first (FIFO admission order)."""
        if limit <= 0:
            return []
        stmt = (
            select(QueueJobModel.id)
            .where(QueueJobModel.status == DownloadStatus.PENDING.value)
            .order_by(QueueJobModel.created_at.asc(), QueueJobModel.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        job_id: str,
        from_statuses: Iterable[DownloadStatus],
        to_status: DownloadStatus,
        **values: Any,
    ) -> bool:
        """Move a job to to_status only if it's currently in one of from_statuses.

        Extra keyword arguments are written as column values in the same UPDATE.

        Returns:
            True if the row matched and was updated
        """
        stmt = (
            update(QueueJobModel)
            .where(QueueJobModel.id == job_id)
            .where(QueueJobModel.status.in_([s.value for s in from_statuses]))
            .values(status=to_status.value, updated_at=utc_now(), **values)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def claim(self, job_id: str) -> bool:
        """PENDING → PROCESSING with progress reset, atomically."""
        return await self.transition(
            job_id,
            [DownloadStatus.PENDING],
            DownloadStatus.PROCESSING,
            progress=0,
            error=None,
        )

    async def update_progress(self, job_id: str, percent: int) -> bool:
        """Raise progress only while PROCESSING and only upward."""
        stmt = (
            update(QueueJobModel)
            .where(QueueJobModel.id == job_id)
            .where(QueueJobModel.status == DownloadStatus.PROCESSING.value)
            .where(QueueJobModel.progress < percent)
            .values(progress=percent, updated_at=utc_now())
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def update_items(self, job_id: str, total: int, completed: int) -> None:
        """Record playlist item counters."""
        stmt = (
            update(QueueJobModel)
            .where(QueueJobModel.id == job_id)
            .values(items_total=total, items_completed=completed, updated_at=utc_now())
        )
        await self.session.execute(stmt)

    async def bulk_transition(
        self,
        from_statuses: Iterable[DownloadStatus],
        to_status: DownloadStatus,
        **values: Any,
    ) -> int:
        """Move every job in from_statuses to to_status. Returns affected rows."""
        stmt = (
            update(QueueJobModel)
            .where(QueueJobModel.status.in_([s.value for s in from_statuses]))
            .values(status=to_status.value, updated_at=utc_now(), **values)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def reset_processing(self) -> int:
        """Crash recovery: PROCESSING → PENDING with progress and error cleared."""
        return await self.bulk_transition(
            [DownloadStatus.PROCESSING],
            DownloadStatus.PENDING,
            progress=0,
            error=None,
        )

    async def count_by_status(self) -> dict[DownloadStatus, int]:
        """Count jobs per status (every status present, zero if none)."""
        stmt = select(QueueJobModel.status, func.count()).group_by(QueueJobModel.status)
        result = await self.session.execute(stmt)
        counts = {status: 0 for status in DownloadStatus}
        for status_value, count in result.all():
            try:
                counts[DownloadStatus(status_value)] = int(count)
            except ValueError:
                continue
        return counts

    async def delete_finished_before(
        self, statuses: Iterable[DownloadStatus], cutoff: datetime
    ) -> int:
        """Delete jobs in the given statuses last updated before cutoff."""
        stmt = (
            delete(QueueJobModel)
            .where(QueueJobModel.status.in_([s.value for s in statuses]))
            .where(QueueJobModel.updated_at < cutoff)
        )
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]


class FileRepository:
    """SQLAlchemy repository for produced media files."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: FileModel) -> MediaFile:
        return MediaFile(
            id=model.id,
            title=model.title,
            artist=model.artist,
            file_type=model.file_type,
            file_size=model.file_size,
            duration=model.duration,
            path=model.path,
            thumbnail_path=model.thumbnail_path,
            source_url=model.source_url,
            group_type=_group_type(model.group_type),
            group_name=model.group_name,
            rank=model.rank,
            download_count=model.download_count,
            created_at=ensure_utc_aware(model.created_at),
        )

    async def add(self, media_file: MediaFile) -> None:
        """Add a new file row."""
        model = FileModel(
            id=media_file.id,
            title=media_file.title,
            artist=media_file.artist,
            file_type=media_file.file_type,
            file_size=media_file.file_size,
            duration=media_file.duration,
            path=media_file.path,
            thumbnail_path=media_file.thumbnail_path,
            source_url=media_file.source_url,
            group_type=media_file.group_type.value if media_file.group_type else None,
            group_name=media_file.group_name,
            rank=media_file.rank,
            download_count=media_file.download_count,
            created_at=media_file.created_at,
        )
        self.session.add(model)
        await self.session.flush()

    async def get_by_id(self, file_id: str) -> MediaFile | None:
        """Get a file by ID."""
        model = await self.session.get(FileModel, file_id)
        return self._to_entity(model) if model else None

    async def recent_groups(self, since: datetime, limit: int = 10) -> list[dict[str, Any]]:
        """Aggregate files created since `since` by (group_type, group_name), most recent first."""
        last_updated = func.max(FileModel.created_at).label("last_updated")
        stmt = (
            select(
                FileModel.group_type,
                FileModel.group_name,
                func.count(FileModel.id).label("file_count"),
                last_updated,
            )
            .where(FileModel.created_at >= since)
            .where(FileModel.group_type.is_not(None))
            .where(FileModel.group_name.is_not(None))
            .group_by(FileModel.group_type, FileModel.group_name)
            .order_by(last_updated.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        groups = []
        for group_type, group_name, file_count, last in result.all():
            groups.append(
                {
                    "group_type": group_type,
                    "group_name": group_name,
                    "file_count": int(file_count),
                    # func.max() can come back as a string on SQLite
                    "last_updated": ensure_utc_aware(
                        datetime.fromisoformat(last) if isinstance(last, str) else last
                    ),
                }
            )
        return groups


class FileCacheRepository:
    """SQLAlchemy repository for the dedup index and its daily stats."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    @staticmethod
    def _to_entity(model: FileCacheModel) -> FileCacheEntry:
        return FileCacheEntry(
            id=model.id,
            title=model.title,
            artist=model.artist,
            normalized_title=model.normalized_title,
            normalized_artist=model.normalized_artist,
            file_type=model.file_type,
            file_size=model.file_size,
            duration=model.duration,
            path=model.path,
            thumbnail_path=model.thumbnail_path,
            source_url=model.source_url,
            group_type=_group_type(model.group_type),
            group_name=model.group_name,
            rank=model.rank,
            is_temporary=model.is_temporary,
            last_used_at=ensure_utc_aware(model.last_used_at),
            created_at=ensure_utc_aware(model.created_at),
        )

    async def add(self, entry: FileCacheEntry) -> None:
        """Add a new cache entry."""
        model = FileCacheModel(
            id=entry.id,
            title=entry.title,
            artist=entry.artist,
            normalized_title=entry.normalized_title,
            normalized_artist=entry.normalized_artist,
            file_type=entry.file_type,
            file_size=entry.file_size,
            duration=entry.duration,
            path=entry.path,
            thumbnail_path=entry.thumbnail_path,
            source_url=entry.source_url,
            group_type=entry.group_type.value if entry.group_type else None,
            group_name=entry.group_name,
            rank=entry.rank,
            is_temporary=entry.is_temporary,
            last_used_at=entry.last_used_at,
            created_at=entry.created_at,
        )
        self.session.add(model)
        await self.session.flush()

    async def get_by_id(self, entry_id: str) -> FileCacheEntry | None:
        """Get a cache entry by ID."""
        model = await self.session.get(FileCacheModel, entry_id)
        return self._to_entity(model) if model else None

    async def find_most_recent(
        self, normalized_title: str, normalized_artist: str, file_type: str
    ) -> FileCacheEntry | None:
        """Most recently used entry matching the lookup key."""
        stmt = (
            select(FileCacheModel)
            .where(FileCacheModel.normalized_title == normalized_title)
            .where(FileCacheModel.normalized_artist == normalized_artist)
            .where(FileCacheModel.file_type == file_type)
            .order_by(FileCacheModel.last_used_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def touch(self, entry_id: str, when: datetime | None = None) -> None:
        """Refresh last_used_at."""
        stmt = (
            update(FileCacheModel)
            .where(FileCacheModel.id == entry_id)
            .values(last_used_at=when or utc_now())
        )
        await self.session.execute(stmt)

    async def delete(self, entry_id: str) -> None:
        """Delete a cache entry (no error if already gone)."""
        await self.session.execute(
            delete(FileCacheModel).where(FileCacheModel.id == entry_id)
        )

    async def count_temporary(self) -> int:
        stmt = select(func.count()).select_from(FileCacheModel).where(
            FileCacheModel.is_temporary.is_(True)
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def list_temporary(self, limit: int | None = None) -> list[FileCacheEntry]:
        """Temporary entries, least recently used first."""
        stmt = (
            select(FileCacheModel)
            .where(FileCacheModel.is_temporary.is_(True))
            .order_by(FileCacheModel.last_used_at.asc(), FileCacheModel.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def size_summary(self) -> dict[str, int]:
        """Counts and byte totals split by temporary/permanent."""
        stmt = select(
            FileCacheModel.is_temporary,
            func.count(FileCacheModel.id),
            func.coalesce(func.sum(FileCacheModel.file_size), 0),
        ).group_by(FileCacheModel.is_temporary)
        summary = {
            "temporary_count": 0,
            "temporary_size": 0,
            "permanent_count": 0,
            "permanent_size": 0,
        }
        for is_temporary, count, size in (await self.session.execute(stmt)).all():
            prefix = "temporary" if is_temporary else "permanent"
            summary[f"{prefix}_count"] = int(count)
            summary[f"{prefix}_size"] = int(size)
        return summary

    async def record_lookup(self, hit: bool, day: date) -> None:
        """Increment today's hit or miss counter, creating the row if needed."""
        stmt = select(CacheStatsModel).where(CacheStatsModel.day == day)
        model = (await self.session.execute(stmt)).scalar_one_or_none()
        if model is None:
            model = CacheStatsModel(day=day, total_hits=0, total_misses=0)
            self.session.add(model)
        if hit:
            model.total_hits += 1
        else:
            model.total_misses += 1
        await self.session.flush()

    async def stats_since(self, since: date) -> list[CacheStatsModel]:
        """Daily stats rows from `since` (inclusive), newest first."""
        stmt = (
            select(CacheStatsModel)
            .where(CacheStatsModel.day >= since)
            .order_by(CacheStatsModel.day.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())
