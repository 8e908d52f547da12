"""Tests for the Downloader (job execution for all four variants).

Hey future me - these drive Downloader.process() directly on rows that are already
PROCESSING, the way QueueManager hands them over. FakeExtractor stands in for yt-dlp.
"""

import asyncio
from pathlib import Path

import pytest
from helpers import (
    FakeExtractor,
    RecordingBroadcaster,
    insert_job,
    load_job,
    make_playlist,
    wait_until,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.application.workers.downloader import (
    EMPTY_OUTPUT_MESSAGE,
    EMPTY_PLAYLIST_MESSAGE,
    Downloader,
)
from tubevault.domain.dtos import VideoInfo
from tubevault.domain.entities import (
    CANCELLED_MESSAGE,
    DownloadStatus,
    DownloadType,
    FileGroupType,
    JobOptions,
    MediaFile,
    PlaylistDownloadOptions,
    QueueJob,
    SingleDownloadOptions,
)
from tubevault.domain.value_objects import date_folder_name
from tubevault.infrastructure.notifications.status_broadcaster import (
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_ITEM_COMPLETE,
    EVENT_STATUS,
)
from tubevault.infrastructure.persistence import FileRepository, QueueJobRepository

SessionFactory = async_sessionmaker[AsyncSession]
VIDEO_URL = "https://youtube.com/watch?v=abc"
PLAYLIST_URL = "https://youtube.com/playlist?list=PL1"


async def _processing_job(
    session_factory: SessionFactory,
    download_type: DownloadType = DownloadType.MP3,
    url: str = VIDEO_URL,
    options: JobOptions | None = None,
) -> QueueJob:
    job = QueueJob.create(url, download_type, options)
    job.status = DownloadStatus.PROCESSING
    return await insert_job(session_factory, job)


async def _file(session_factory: SessionFactory, file_id: str | None) -> MediaFile:
    assert file_id is not None
    async with session_factory() as session:
        media_file = await FileRepository(session).get_by_id(file_id)
    assert media_file is not None
    return media_file


def _processing_progress(broadcaster: RecordingBroadcaster, job_id: str) -> list[int]:
    return [
        e.data["progress"]
        for e in broadcaster.for_job(job_id, EVENT_STATUS)
        if e.data["status"] == DownloadStatus.PROCESSING.value
    ]


class TestSingleDownloads:
    """mp3 and video720p jobs."""

    @pytest.mark.asyncio
    async def test_mp3_completes_with_file(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
        media_root: Path,
    ) -> None:
        extractor.infos[VIDEO_URL] = VideoInfo(id="abc", title="Never Gonna", uploader="Rick")
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        done = await load_job(session_factory, job.id)
        assert done.status == DownloadStatus.COMPLETED
        assert done.progress == 100
        assert done.error is None
        media_file = await _file(session_factory, done.file_id)
        assert media_file.file_type == "MP3"
        assert media_file.group_type == FileGroupType.YOUTUBE_SINGLE
        assert Path(media_file.path).parent == media_root / "youtube" / date_folder_name()
        assert Path(media_file.path).name == "Never_Gonna_Rick.mp3"
        assert Path(media_file.path).is_file()

        complete = broadcaster.for_job(job.id, EVENT_COMPLETE)
        assert len(complete) == 1
        assert complete[0].data["file_id"] == media_file.id

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(
        self,
        downloader: Downloader,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        # The fake reports 10, 50, 30, 100; the regression to 30 is dropped
        assert _processing_progress(broadcaster, job.id) == [0, 10, 50, 100]

    @pytest.mark.asyncio
    async def test_video_uses_mp4(
        self, downloader: Downloader, session_factory: SessionFactory
    ) -> None:
        job = await _processing_job(session_factory, DownloadType.VIDEO_720P)

        await downloader.process(job.id)

        done = await load_job(session_factory, job.id)
        media_file = await _file(session_factory, done.file_id)
        assert media_file.file_type == "MP4"
        assert media_file.path.endswith(".mp4")

    @pytest.mark.asyncio
    async def test_second_request_is_served_from_cache(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
    ) -> None:
        first = await _processing_job(session_factory)
        await downloader.process(first.id)
        second = await _processing_job(session_factory)
        await downloader.process(second.id)

        assert extractor.download_calls == [VIDEO_URL]
        first_done = await load_job(session_factory, first.id)
        second_done = await load_job(session_factory, second.id)
        assert second_done.status == DownloadStatus.COMPLETED
        assert second_done.file_id != first_done.file_id
        copy = await _file(session_factory, second_done.file_id)
        assert Path(copy.path).is_file()

    @pytest.mark.asyncio
    async def test_single_download_is_cached_as_temporary(
        self,
        downloader: Downloader,
        file_cache: FileCacheService,
        session_factory: SessionFactory,
    ) -> None:
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        stats = await file_cache.get_cache_stats()
        assert stats["temporary_count"] == 1
        assert stats["permanent_count"] == 0

    @pytest.mark.asyncio
    async def test_chart_item_uses_rank_cover_and_durable_cache(
        self,
        downloader: Downloader,
        file_cache: FileCacheService,
        session_factory: SessionFactory,
        media_root: Path,
    ) -> None:
        options = SingleDownloadOptions(
            title="Chart Song",
            artist="Star",
            rank=3,
            is_chart=True,
            cover_url="https://img.example/cover.jpg",
        )
        job = await _processing_job(session_factory, options=options)

        await downloader.process(job.id)

        done = await load_job(session_factory, job.id)
        media_file = await _file(session_factory, done.file_id)
        assert media_file.title == "Chart Song"
        assert media_file.artist == "Star"
        assert media_file.rank == 3
        assert media_file.group_type == FileGroupType.CHART
        assert media_file.group_name == "TOP30"
        path = Path(media_file.path)
        assert path.name == "3_Chart_Song_Star.mp3"
        assert path.parent == media_root / "chart" / f"TOP30_{date_folder_name()}"
        assert media_file.thumbnail_path == str(path.with_name("3_Chart_Song_Star_cover.jpg"))
        stats = await file_cache.get_cache_stats()
        assert stats["permanent_count"] == 1
        assert stats["temporary_count"] == 0


class TestFailures:
    """Jobs that end FAILED."""

    @pytest.mark.asyncio
    async def test_missing_tools_fail_fast(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        extractor.missing = ["yt-dlp"]
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        failed = await load_job(session_factory, job.id)
        assert failed.status == DownloadStatus.FAILED
        assert failed.error == "Required tools missing: yt-dlp"
        assert extractor.download_calls == []
        errors = broadcaster.for_job(job.id, EVENT_ERROR)
        assert [e.data["error"] for e in errors] == ["Required tools missing: yt-dlp"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_and_cleans_up(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        media_root: Path,
    ) -> None:
        extractor.exit_codes[VIDEO_URL] = 1
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        failed = await load_job(session_factory, job.id)
        assert failed.status == DownloadStatus.FAILED
        assert failed.error == "Download failed with exit code 1"
        assert list(media_root.rglob("*.mp3")) == []

    @pytest.mark.asyncio
    async def test_empty_output_fails(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        media_root: Path,
    ) -> None:
        extractor.empty_output.add(VIDEO_URL)
        job = await _processing_job(session_factory)

        await downloader.process(job.id)

        failed = await load_job(session_factory, job.id)
        assert failed.status == DownloadStatus.FAILED
        assert failed.error == EMPTY_OUTPUT_MESSAGE
        assert list(media_root.rglob("*.mp3")) == []

    @pytest.mark.asyncio
    async def test_job_not_processing_is_ignored(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        job = await insert_job(session_factory, QueueJob.create(VIDEO_URL, DownloadType.MP3))

        await downloader.process(job.id)

        assert (await load_job(session_factory, job.id)).status == DownloadStatus.PENDING
        assert extractor.download_calls == []
        assert broadcaster.for_job(job.id) == []

    @pytest.mark.asyncio
    async def test_late_finish_does_not_override_cancel(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        extractor.gate = asyncio.Event()
        job = await _processing_job(session_factory)
        task = asyncio.create_task(downloader.process(job.id))

        async def downloading() -> bool:
            return extractor.running == 1

        await wait_until(downloading)
        async with session_factory() as session:
            await QueueJobRepository(session).transition(
                job.id,
                [DownloadStatus.PROCESSING],
                DownloadStatus.FAILED,
                error=CANCELLED_MESSAGE,
            )
            await session.commit()
        extractor.gate.set()
        await task

        final = await load_job(session_factory, job.id)
        assert final.status == DownloadStatus.FAILED
        assert final.error == CANCELLED_MESSAGE
        assert broadcaster.for_job(job.id, EVENT_COMPLETE) == []


class TestPlaylists:
    """playlist_mp3 / playlist_video jobs."""

    @pytest.mark.asyncio
    async def test_all_items_succeed(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
        media_root: Path,
    ) -> None:
        extractor.playlists[PLAYLIST_URL] = make_playlist(3)
        job = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)

        await downloader.process(job.id)

        done = await load_job(session_factory, job.id)
        assert done.status == DownloadStatus.COMPLETED
        assert done.progress == 100
        assert done.items_total == 3
        assert done.items_completed == 3
        assert done.file_id is None
        assert len(list((media_root / "playlists" / "Road_Trip").glob("*.mp3"))) == 3
        item_events = broadcaster.for_job(job.id, EVENT_ITEM_COMPLETE)
        assert [e.data["index"] for e in item_events] == [0, 1, 2]
        for event in item_events:
            media_file = await _file(session_factory, event.data["file_id"])
            assert event.data["file"]["id"] == media_file.id
            assert event.data["file"]["group_name"] == "Road Trip"
        assert [e.is_final for e in broadcaster.for_job(job.id, EVENT_COMPLETE)] == [True]
        assert _processing_progress(broadcaster, job.id) == [0, 33, 66]

    @pytest.mark.asyncio
    async def test_group_name_option_overrides_title(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        media_root: Path,
    ) -> None:
        extractor.playlists[PLAYLIST_URL] = make_playlist(1)
        job = await _processing_job(
            session_factory,
            DownloadType.PLAYLIST_VIDEO,
            PLAYLIST_URL,
            PlaylistDownloadOptions(group_name="Summer Mix"),
        )

        await downloader.process(job.id)

        assert len(list((media_root / "playlists" / "Summer_Mix").glob("*.mp4"))) == 1

    @pytest.mark.asyncio
    async def test_some_items_fail(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        playlist = make_playlist(3)
        extractor.playlists[PLAYLIST_URL] = playlist
        extractor.exit_codes[playlist.entries[1].url] = 1
        job = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)

        await downloader.process(job.id)

        done = await load_job(session_factory, job.id)
        assert done.status == DownloadStatus.PARTIALLY_COMPLETED
        assert done.progress == 100
        assert done.items_completed == 2
        assert done.items_total == 3
        assert done.error == "2 of 3 items downloaded"
        item_events = broadcaster.for_job(job.id, EVENT_ITEM_COMPLETE)
        assert [e.data["index"] for e in item_events] == [0, 2]
        assert all(e.data["file_id"] for e in item_events)
        item_error = broadcaster.for_job(job.id, EVENT_ERROR)
        assert len(item_error) == 1
        assert item_error[0].data == {
            "error": "Failed to download item 2/3: Download failed with exit code 1",
            "item_index": 1,
        }
        assert not item_error[0].is_final

    @pytest.mark.asyncio
    async def test_all_items_fail(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
    ) -> None:
        playlist = make_playlist(2)
        extractor.playlists[PLAYLIST_URL] = playlist
        for entry in playlist.entries:
            extractor.exit_codes[entry.url] = 1
        job = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)

        await downloader.process(job.id)

        failed = await load_job(session_factory, job.id)
        assert failed.status == DownloadStatus.FAILED
        assert failed.error == "0 of 2 items downloaded"

    @pytest.mark.asyncio
    async def test_empty_playlist_fails(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
    ) -> None:
        extractor.playlists[PLAYLIST_URL] = make_playlist(0)
        job = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)

        await downloader.process(job.id)

        failed = await load_job(session_factory, job.id)
        assert failed.status == DownloadStatus.FAILED
        assert failed.error == EMPTY_PLAYLIST_MESSAGE

    @pytest.mark.asyncio
    async def test_playlist_items_are_not_added_to_cache(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        file_cache: FileCacheService,
        session_factory: SessionFactory,
    ) -> None:
        extractor.playlists[PLAYLIST_URL] = make_playlist(2)
        job = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)

        await downloader.process(job.id)

        stats = await file_cache.get_cache_stats()
        assert stats["total_files"] == 0

    @pytest.mark.asyncio
    async def test_rerun_keeps_files_of_earlier_run(
        self,
        downloader: Downloader,
        extractor: FakeExtractor,
        session_factory: SessionFactory,
        broadcaster: RecordingBroadcaster,
        media_root: Path,
    ) -> None:
        playlist = make_playlist(2)
        extractor.playlists[PLAYLIST_URL] = playlist
        first = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)
        await downloader.process(first.id)
        folder = media_root / "playlists" / "Road_Trip"
        earlier = {path.name: path.read_bytes() for path in folder.glob("*.mp3")}
        assert sorted(earlier) == ["Track_0_Band.mp3", "Track_1_Band.mp3"]

        extractor.exit_codes[playlist.entries[1].url] = 1
        second = await _processing_job(session_factory, DownloadType.PLAYLIST_MP3, PLAYLIST_URL)
        await downloader.process(second.id)

        # The failed item must not take the earlier file with it
        for name, content in earlier.items():
            assert (folder / name).read_bytes() == content
        assert (folder / "Track_0_Band_1.mp3").is_file()
        assert not (folder / "Track_1_Band_1.mp3").exists()
        file_ids = [
            e.data["file_id"]
            for job in (first, second)
            for e in broadcaster.for_job(job.id, EVENT_ITEM_COMPLETE)
        ]
        paths = {(await _file(session_factory, file_id)).path for file_id in file_ids}
        assert len(file_ids) == 3
        assert paths == {str(folder / name) for name in [*earlier, "Track_0_Band_1.mp3"]}
