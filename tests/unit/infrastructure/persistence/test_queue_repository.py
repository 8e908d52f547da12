"""Tests for the conditional updates of QueueJobRepository and the cache repository.

Hey future me - these run against a real SQLite file. The conditional UPDATEs are the
whole concurrency story of the queue, so they're worth exercising with actual SQL.
"""

from datetime import UTC, date, datetime, timedelta

import pytest
from helpers import insert_job, load_job
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.domain.entities import (
    DownloadStatus,
    DownloadType,
    FileCacheEntry,
    QueueJob,
    SingleDownloadOptions,
)
from tubevault.domain.exceptions import EntityNotFoundException
from tubevault.infrastructure.persistence import FileCacheRepository, QueueJobRepository

SessionFactory = async_sessionmaker[AsyncSession]


def _job(status: DownloadStatus = DownloadStatus.PENDING, **kwargs: object) -> QueueJob:
    job = QueueJob.create("https://youtube.com/watch?v=abc", DownloadType.MP3)
    job.status = status
    for key, value in kwargs.items():
        setattr(job, key, value)
    return job


def _cache_entry(entry_id: str, path: str, last_used_at: datetime) -> FileCacheEntry:
    return FileCacheEntry(
        id=entry_id,
        title="Song",
        normalized_title="song",
        normalized_artist="band",
        file_type="MP3",
        file_size=10,
        path=path,
        last_used_at=last_used_at,
    )


class TestQueueJobRepository:
    """Conditional state writes."""

    @pytest.mark.asyncio
    async def test_add_and_get_round_trip(self, session_factory: SessionFactory) -> None:
        job = _job(options=SingleDownloadOptions(rank=4, is_chart=True))
        await insert_job(session_factory, job)

        loaded = await load_job(session_factory, job.id)
        assert loaded.url == job.url
        assert loaded.type == DownloadType.MP3
        assert loaded.options == SingleDownloadOptions(rank=4, is_chart=True)
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_required_raises_for_unknown(self, session_factory: SessionFactory) -> None:
        async with session_factory() as session:
            with pytest.raises(EntityNotFoundException):
                await QueueJobRepository(session).get_required("missing")

    @pytest.mark.asyncio
    async def test_claim_only_matches_pending(self, session_factory: SessionFactory) -> None:
        job = await insert_job(session_factory, _job(progress=0))

        async with session_factory() as session:
            repo = QueueJobRepository(session)
            assert await repo.claim(job.id) is True
            assert await repo.claim(job.id) is False
            await session.commit()

        assert (await load_job(session_factory, job.id)).status == DownloadStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_progress_ratchets_upward(self, session_factory: SessionFactory) -> None:
        job = await insert_job(session_factory, _job(DownloadStatus.PROCESSING))

        async with session_factory() as session:
            repo = QueueJobRepository(session)
            assert await repo.update_progress(job.id, 40) is True
            assert await repo.update_progress(job.id, 20) is False
            assert await repo.update_progress(job.id, 40) is False
            await session.commit()

        assert (await load_job(session_factory, job.id)).progress == 40

    @pytest.mark.asyncio
    async def test_progress_ignored_after_cancel(self, session_factory: SessionFactory) -> None:
        job = await insert_job(session_factory, _job(DownloadStatus.FAILED, error="x"))

        async with session_factory() as session:
            assert await QueueJobRepository(session).update_progress(job.id, 80) is False
            await session.commit()

        assert (await load_job(session_factory, job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_transition_from_wrong_status_misses(
        self, session_factory: SessionFactory
    ) -> None:
        job = await insert_job(session_factory, _job(DownloadStatus.PAUSED))

        async with session_factory() as session:
            matched = await QueueJobRepository(session).transition(
                job.id, [DownloadStatus.PROCESSING], DownloadStatus.COMPLETED, progress=100
            )
            await session.commit()

        assert matched is False
        assert (await load_job(session_factory, job.id)).status == DownloadStatus.PAUSED

    @pytest.mark.asyncio
    async def test_reset_processing(self, session_factory: SessionFactory) -> None:
        stuck = await insert_job(
            session_factory, _job(DownloadStatus.PROCESSING, progress=55, error="partial")
        )
        paused = await insert_job(session_factory, _job(DownloadStatus.PAUSED, progress=20))

        async with session_factory() as session:
            assert await QueueJobRepository(session).reset_processing() == 1
            await session.commit()

        reset = await load_job(session_factory, stuck.id)
        assert reset.status == DownloadStatus.PENDING
        assert reset.progress == 0
        assert reset.error is None
        untouched = await load_job(session_factory, paused.id)
        assert untouched.status == DownloadStatus.PAUSED
        assert untouched.progress == 20

    @pytest.mark.asyncio
    async def test_count_by_status_includes_zeros(self, session_factory: SessionFactory) -> None:
        await insert_job(session_factory, _job())
        await insert_job(session_factory, _job())
        await insert_job(session_factory, _job(DownloadStatus.FAILED, error="x"))

        async with session_factory() as session:
            counts = await QueueJobRepository(session).count_by_status()

        assert counts[DownloadStatus.PENDING] == 2
        assert counts[DownloadStatus.FAILED] == 1
        assert counts[DownloadStatus.PAUSED] == 0
        assert set(counts) == set(DownloadStatus)

    @pytest.mark.asyncio
    async def test_pending_ids_are_fifo(self, session_factory: SessionFactory) -> None:
        base = datetime.now(UTC)
        newer = await insert_job(session_factory, _job(created_at=base))
        older = await insert_job(session_factory, _job(created_at=base - timedelta(minutes=5)))

        async with session_factory() as session:
            ids = await QueueJobRepository(session).list_pending_ids(10)

        assert ids == [older.id, newer.id]

    @pytest.mark.asyncio
    async def test_delete_finished_before(self, session_factory: SessionFactory) -> None:
        old = datetime.now(UTC) - timedelta(days=10)
        stale = await insert_job(
            session_factory, _job(DownloadStatus.COMPLETED, progress=100, updated_at=old)
        )
        fresh = await insert_job(session_factory, _job(DownloadStatus.COMPLETED, progress=100))
        old_pending = await insert_job(session_factory, _job(updated_at=old))

        async with session_factory() as session:
            deleted = await QueueJobRepository(session).delete_finished_before(
                [DownloadStatus.COMPLETED], datetime.now(UTC) - timedelta(days=7)
            )
            await session.commit()

        assert deleted == 1
        async with session_factory() as session:
            repo = QueueJobRepository(session)
            assert await repo.get_by_id(stale.id) is None
            assert await repo.get_by_id(fresh.id) is not None
            assert await repo.get_by_id(old_pending.id) is not None


class TestFileCacheRepository:
    """Dedup index queries and daily stats."""

    @pytest.mark.asyncio
    async def test_find_most_recent_prefers_latest_use(
        self, session_factory: SessionFactory
    ) -> None:
        now = datetime.now(UTC)
        older = _cache_entry("old", "/a.mp3", now - timedelta(hours=1))
        newer = _cache_entry("new", "/b.mp3", now)

        async with session_factory() as session:
            repo = FileCacheRepository(session)
            await repo.add(older)
            await repo.add(newer)
            await session.commit()

        async with session_factory() as session:
            found = await FileCacheRepository(session).find_most_recent("song", "band", "MP3")

        assert found is not None
        assert found.id == "new"

    @pytest.mark.asyncio
    async def test_record_lookup_accumulates_per_day(
        self, session_factory: SessionFactory
    ) -> None:
        today = date(2024, 3, 1)
        async with session_factory() as session:
            repo = FileCacheRepository(session)
            await repo.record_lookup(hit=True, day=today)
            await repo.record_lookup(hit=False, day=today)
            await repo.record_lookup(hit=True, day=today)
            await session.commit()

        async with session_factory() as session:
            rows = await FileCacheRepository(session).stats_since(date(2024, 2, 1))

        assert len(rows) == 1
        assert rows[0].total_hits == 2
        assert rows[0].total_misses == 1
