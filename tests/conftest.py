"""Shared fixtures.

The database is a throwaway SQLite file per test (a file, not :memory:, so concurrent
sessions from the queue's tasks behave like they do in production).
"""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from helpers import FakeExtractor, RecordingBroadcaster
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.application.workers.downloader import Downloader
from tubevault.application.workers.queue_manager import QueueManager
from tubevault.config import Settings
from tubevault.infrastructure.persistence import Database
from tubevault.infrastructure.persistence.retry import DatabaseLockMetrics


@pytest.fixture(autouse=True)
def reset_lock_metrics() -> None:
    DatabaseLockMetrics.get_instance().reset()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        app_env="test",
        database={"url": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"},
        storage={"media_path": tmp_path / "media", "bin_path": tmp_path / "bin"},
        download={"job_timeout_seconds": 0, "recovery_delay_seconds": 0},
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def session_factory(db: Database) -> async_sessionmaker[AsyncSession]:
    return db.session_factory


@pytest.fixture
def media_root(settings: Settings) -> Path:
    root = settings.storage.media_path
    root.mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def file_cache(session_factory: async_sessionmaker[AsyncSession]) -> FileCacheService:
    return FileCacheService(session_factory, max_temp_files=200)


@pytest.fixture
def downloader(
    session_factory: async_sessionmaker[AsyncSession],
    extractor: FakeExtractor,
    broadcaster: RecordingBroadcaster,
    file_cache: FileCacheService,
    media_root: Path,
) -> Downloader:
    return Downloader(session_factory, extractor, broadcaster, file_cache, media_root)


@pytest_asyncio.fixture
async def queue_manager(
    session_factory: async_sessionmaker[AsyncSession],
    downloader: Downloader,
    broadcaster: RecordingBroadcaster,
) -> AsyncIterator[QueueManager]:
    manager = QueueManager(
        session_factory, downloader, broadcaster, max_concurrent=1, job_timeout_seconds=0
    )
    yield manager
    await manager.shutdown()
