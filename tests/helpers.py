"""Test doubles and polling helpers shared by the unit tests.

Hey future me - nothing here spawns yt-dlp or touches the network. FakeExtractor writes small
files to disk and reports scripted progress; RecordingBroadcaster keeps every event it fans out.
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.domain.dtos import PlaylistEntry, PlaylistInfo, VideoInfo
from tubevault.domain.entities import DownloadStatus, MediaKind, QueueJob
from tubevault.domain.ports import IMediaExtractor, ProgressCallback
from tubevault.infrastructure.notifications import InMemoryStatusBroadcaster, StatusEvent
from tubevault.infrastructure.persistence import QueueJobRepository


class FakeExtractor(IMediaExtractor):
    """Scriptable stand-in for the yt-dlp adapter."""

    def __init__(self) -> None:
        self.missing: list[str] = []
        self.infos: dict[str, VideoInfo] = {}
        self.playlists: dict[str, PlaylistInfo] = {}
        self.exit_codes: dict[str, int] = {}
        self.empty_output: set[str] = set()
        # 30 after 50 is a regression the progress ratchet has to drop
        self.progress_steps: list[int] = [10, 50, 30, 100]
        self.gate: asyncio.Event | None = None
        self.cover_bytes = b"\xff\xd8\xff\xe0cover"

        self.download_calls: list[str] = []
        self.killed: list[str] = []
        self.running = 0
        self.max_running = 0

    def missing_tools(self) -> list[str]:
        return list(self.missing)

    async def get_info(self, url: str) -> VideoInfo:
        if url in self.infos:
            return self.infos[url]
        return VideoInfo(id=url, title=f"Song {url}", uploader="Uploader", duration=200)

    async def get_playlist_info(self, url: str) -> PlaylistInfo:
        return self.playlists[url]

    async def download(
        self,
        url: str,
        output_path: Path,
        media_kind: MediaKind,
        on_progress: ProgressCallback | None = None,
        job_id: str | None = None,
    ) -> int:
        self.download_calls.append(url)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for percent in self.progress_steps:
                if on_progress is not None:
                    await on_progress(percent)
            exit_code = self.exit_codes.get(url, 0)
            if exit_code == 0:
                output_path.write_bytes(b"" if url in self.empty_output else b"media-bytes")
            return exit_code
        finally:
            self.running -= 1

    async def embed_cover(self, media_path: Path, cover_url: str) -> Path | None:
        cover_path = media_path.with_name(f"{media_path.stem}_cover.jpg")
        cover_path.write_bytes(self.cover_bytes)
        return cover_path

    async def kill(self, job_id: str) -> bool:
        self.killed.append(job_id)
        return True


class RecordingBroadcaster(InMemoryStatusBroadcaster):
    """In-memory broadcaster that also keeps every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[StatusEvent] = []

    def _publish(self, event: StatusEvent) -> None:
        self.events.append(event)
        super()._publish(event)

    def for_job(self, job_id: str, event: str | None = None) -> list[StatusEvent]:
        return [
            e for e in self.events if e.job_id == job_id and (event is None or e.event == event)
        ]


def make_playlist(count: int, title: str = "Road Trip") -> PlaylistInfo:
    return PlaylistInfo(
        id="PL1",
        title=title,
        entries=[
            PlaylistEntry(
                id=f"v{i}",
                title=f"Track {i}",
                url=f"https://youtube.com/watch?v=v{i}",
                uploader="Band",
            )
            for i in range(count)
        ],
    )


async def wait_until(
    predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0, interval: float = 0.01
) -> None:
    """Poll an async predicate until it holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


async def insert_job(
    session_factory: async_sessionmaker[AsyncSession], job: QueueJob
) -> QueueJob:
    async with session_factory() as session:
        await QueueJobRepository(session).add(job)
        await session.commit()
    return job


async def load_job(
    session_factory: async_sessionmaker[AsyncSession], job_id: str
) -> QueueJob:
    async with session_factory() as session:
        return await QueueJobRepository(session).get_required(job_id)


def status_is(
    session_factory: async_sessionmaker[AsyncSession], job_id: str, *statuses: DownloadStatus
) -> Callable[[], Awaitable[bool]]:
    """Predicate for wait_until: the job reached one of the statuses."""

    async def check() -> bool:
        job = await load_job(session_factory, job_id)
        return job.status in statuses

    return check
