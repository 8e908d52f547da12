"""Downloader - drives ONE claimed queue job to a terminal state.

Hey future me - the QueueManager hands us a job id that it already moved PENDING → PROCESSING.
From here on this module owns the job until it is COMPLETED, PARTIALLY_COMPLETED or FAILED.

Variants:
- mp3 / video720p: single item. Cache hit → copy. Miss → yt-dlp → File row → cache entry.
- playlist_mp3 / playlist_video: resolve entries, process each in order. One broken item never
  aborts the rest, the end result depends on how many made it.

Every write to the job row is CONDITIONAL on status == processing. If the user cancels or pauses
while we're mid-download, our late "completed" or progress tick simply doesn't match and the
user's decision stands. The task itself gets cancelled too (see QueueManager), so CancelledError
flows through here untouched - never catch it.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.domain.entities import (
    DownloadStatus,
    FileGroupType,
    MediaFile,
    MediaKind,
    PlaylistDownloadOptions,
    QueueJob,
    SingleDownloadOptions,
    items_summary,
)
from tubevault.domain.exceptions import (
    DownloadExecutionError,
    ExternalServiceError,
    ToolMissingError,
)
from tubevault.domain.ports import IMediaExtractor, IStatusBroadcaster, ProgressCallback
from tubevault.domain.value_objects import (
    SINGLE_GROUP_NAME,
    build_file_name,
    chart_group_name,
    group_folder,
    unique_file_path,
)
from tubevault.infrastructure.persistence import (
    FileRepository,
    QueueJobRepository,
    with_db_retry,
)

logger = logging.getLogger(__name__)

EMPTY_PLAYLIST_MESSAGE = "Playlist has no entries"
EMPTY_OUTPUT_MESSAGE = "Downloaded file is empty"


@dataclass
class ItemRequest:
    """Everything needed to produce one media file."""

    url: str
    title: str
    artist: str | None
    media_kind: MediaKind
    group_type: FileGroupType
    group_name: str
    target_dir: Path
    rank: int | None = None
    duration: int | None = None
    thumbnail: str | None = None
    cover_url: str | None = None
    # None = don't register in the dedup cache
    cache_temporary: bool | None = True


class Downloader:
    """Executes claimed download jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        extractor: IMediaExtractor,
        broadcaster: IStatusBroadcaster,
        cache: FileCacheService,
        media_root: Path,
    ) -> None:
        self._session_factory = session_factory
        self._extractor = extractor
        self._broadcaster = broadcaster
        self._cache = cache
        self._media_root = media_root
        # Output paths handed to running downloads, so concurrent jobs never share one
        self._reserved_paths: set[Path] = set()

    # =========================================================================
    # Entry point
    # =========================================================================

    async def process(self, job_id: str) -> None:
        """Run a PROCESSING job to completion.

        Failures end up as FAILED on the job row, never as exceptions to the caller.
        Task cancellation (pause/cancel/timeout) propagates.
        """
        async with self._session_factory() as session:
            job = await QueueJobRepository(session).get_by_id(job_id)

        if job is None:
            logger.warning("downloader.job_missing", extra={"job_id": job_id})
            return
        if job.status != DownloadStatus.PROCESSING:
            logger.info(
                "downloader.job_not_processing",
                extra={"job_id": job_id, "status": job.status.value},
            )
            return

        logger.info(
            "downloader.job_started",
            extra={"job_id": job.id, "type": job.type.value, "url": job.url},
        )
        await self._broadcaster.emit_status(job.id, DownloadStatus.PROCESSING, 0)

        try:
            missing = self._extractor.missing_tools()
            if missing:
                raise ToolMissingError(missing)

            if job.type.is_playlist:
                await self._process_playlist(job)
            else:
                await self._process_single(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Job boundary: whatever went wrong ends as FAILED with its message
            logger.warning(
                "downloader.job_failed",
                extra={"job_id": job.id, "error": str(e), "error_type": type(e).__name__},
                exc_info=not isinstance(e, ExternalServiceError),
            )
            await self._finish_failed(job.id, str(e) or type(e).__name__)

    async def kill(self, job_id: str) -> bool:
        """Terminate the external process of a running job, if there is one."""
        return await self._extractor.kill(job_id)

    # =========================================================================
    # Variants
    # =========================================================================

    async def _process_single(self, job: QueueJob) -> None:
        options = (
            job.options
            if isinstance(job.options, SingleDownloadOptions)
            else SingleDownloadOptions()
        )
        media_kind = job.type.media_kind
        info = await self._extractor.get_info(job.url)

        if options.is_chart:
            group_type = FileGroupType.CHART
            group_name = chart_group_name(options.chart_size)
            rank = options.rank
        else:
            group_type = FileGroupType.YOUTUBE_SINGLE
            group_name = SINGLE_GROUP_NAME
            rank = None

        request = ItemRequest(
            url=job.url,
            # Chart metadata beats whatever the uploader typed into the video title
            title=options.title or info.title,
            artist=options.artist or info.uploader,
            media_kind=media_kind,
            group_type=group_type,
            group_name=group_name,
            target_dir=group_folder(self._media_root, group_type, group_name),
            rank=rank,
            duration=info.duration,
            thumbnail=info.thumbnail,
            cover_url=options.cover_url
            if options.is_chart and media_kind is MediaKind.AUDIO
            else None,
            cache_temporary=not options.is_chart,
        )

        media_file = await self._reuse_cached(request)
        if media_file is None:
            media_file = await self._download_item(
                job.id, request, on_progress=self._job_progress_callback(job.id)
            )
        await self._finish_completed(job.id, media_file)

    async def _process_playlist(self, job: QueueJob) -> None:
        options = (
            job.options
            if isinstance(job.options, PlaylistDownloadOptions)
            else PlaylistDownloadOptions()
        )
        media_kind = job.type.media_kind
        playlist = await self._extractor.get_playlist_info(job.url)
        total = playlist.total
        if total == 0:
            await self._finish_failed(job.id, EMPTY_PLAYLIST_MESSAGE)
            return

        group_name = options.group_name or playlist.title
        target_dir = group_folder(self._media_root, FileGroupType.YOUTUBE_PLAYLIST, group_name)
        await self._record_items(job.id, total, 0)
        logger.info(
            "downloader.playlist_resolved",
            extra={"job_id": job.id, "playlist": playlist.title, "total": total},
        )

        succeeded = 0
        for index, entry in enumerate(playlist.entries):
            await self._report_progress(job.id, math.floor(index / total * 100))
            await self._broadcaster.emit_playlist_item_progress(
                job.id, index, total, entry.title, 0
            )

            request = ItemRequest(
                url=entry.url,
                title=entry.title,
                artist=entry.uploader,
                media_kind=media_kind,
                group_type=FileGroupType.YOUTUBE_PLAYLIST,
                group_name=group_name,
                target_dir=target_dir,
                duration=entry.duration,
                thumbnail=entry.thumbnail,
                cache_temporary=None,
            )
            try:
                media_file = await self._reuse_cached(request)
                if media_file is None:
                    media_file = await self._download_item(
                        job.id,
                        request,
                        on_progress=self._item_progress_callback(
                            job.id, index, total, entry.title
                        ),
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "downloader.playlist_item_failed",
                    extra={
                        "job_id": job.id,
                        "index": index,
                        "title": entry.title,
                        "error": str(e),
                    },
                )
                await self._broadcaster.emit_error(
                    job.id,
                    f"Failed to download item {index + 1}/{total}: {e}",
                    item_index=index,
                )
                continue

            succeeded += 1
            await self._record_items(job.id, total, succeeded)
            await self._broadcaster.emit_playlist_item_complete(
                job.id, index, total, media_file.id, media_file.to_payload()
            )
            logger.debug(
                "downloader.playlist_item_done",
                extra={"job_id": job.id, "index": index, "file_id": media_file.id},
            )

        if succeeded == total:
            await self._finish_completed(job.id, None, items=(succeeded, total))
        elif succeeded > 0:
            await self._finish_partial(job.id, succeeded, total)
        else:
            await self._finish_failed(job.id, items_summary(0, total))

    # =========================================================================
    # One item
    # =========================================================================

    async def _reuse_cached(self, request: ItemRequest) -> MediaFile | None:
        hit = await self._cache.find_duplicate(
            request.title, request.artist, request.media_kind.file_type
        )
        if hit is None:
            return None
        return await self._cache.copy_from_cache(
            hit.id,
            request.group_type,
            request.group_name,
            rank=request.rank,
            target_dir=request.target_dir,
        )

    async def _download_item(
        self,
        job_id: str,
        request: ItemRequest,
        on_progress: ProgressCallback | None = None,
    ) -> MediaFile:
        """Download via the extractor and register the result.

        Files already on disk are never reused: a name clash gets a numeric suffix, so an
        earlier download of the same title keeps its file. Whatever this attempt wrote is
        removed again if anything fails before the File row exists.
        """
        request.target_dir.mkdir(parents=True, exist_ok=True)
        output_path = unique_file_path(
            request.target_dir
            / build_file_name(
                request.group_type,
                request.title,
                request.media_kind.extension,
                rank=request.rank,
                artist=request.artist,
            ),
            taken=self._reserved_paths,
        )
        self._reserved_paths.add(output_path)

        cover_path: Path | None = None
        try:
            exit_code = await self._extractor.download(
                request.url,
                output_path,
                request.media_kind,
                on_progress=on_progress,
                job_id=job_id,
            )
            if exit_code != 0:
                raise DownloadExecutionError(exit_code)
            if not output_path.is_file() or output_path.stat().st_size == 0:
                raise ExternalServiceError(EMPTY_OUTPUT_MESSAGE)

            if request.cover_url:
                cover_path = await self._extractor.embed_cover(output_path, request.cover_url)

            media_file = MediaFile(
                id=str(uuid.uuid4()),
                title=request.title,
                artist=request.artist,
                file_type=request.media_kind.file_type,
                file_size=output_path.stat().st_size,
                duration=request.duration,
                path=str(output_path),
                thumbnail_path=str(cover_path) if cover_path else request.thumbnail,
                source_url=request.url,
                group_type=request.group_type,
                group_name=request.group_name,
                rank=request.rank,
            )
            async with self._session_factory() as session:
                await FileRepository(session).add(media_file)
                await session.commit()
        except BaseException:
            output_path.unlink(missing_ok=True)
            if cover_path is not None:
                cover_path.unlink(missing_ok=True)
            raise
        finally:
            self._reserved_paths.discard(output_path)

        logger.info(
            "downloader.file_created",
            extra={"job_id": job_id, "file_id": media_file.id, "path": media_file.path},
        )

        if request.cache_temporary is not None:
            await self._register_in_cache(media_file, temporary=request.cache_temporary)
        return media_file

    async def _register_in_cache(self, media_file: MediaFile, temporary: bool) -> None:
        # The file is already in the library at this point, a cache hiccup must not fail the job
        try:
            await self._cache.add_entry(
                title=media_file.title,
                artist=media_file.artist,
                file_type=media_file.file_type,
                file_size=media_file.file_size,
                path=media_file.path,
                duration=media_file.duration,
                thumbnail_path=media_file.thumbnail_path,
                source_url=media_file.source_url,
                group_type=media_file.group_type,
                group_name=media_file.group_name,
                rank=media_file.rank,
                is_temporary=temporary,
            )
            if temporary:
                await self._cache.cleanup_temporary()
        except SQLAlchemyError as e:
            logger.warning(
                "downloader.cache_register_failed",
                extra={"file_id": media_file.id, "error": str(e)},
            )

    # =========================================================================
    # Progress
    # =========================================================================

    def _job_progress_callback(self, job_id: str) -> ProgressCallback:
        async def on_progress(percent: int) -> None:
            await self._report_progress(job_id, percent)

        return on_progress

    def _item_progress_callback(
        self, job_id: str, index: int, total: int, title: str
    ) -> ProgressCallback:
        async def on_progress(percent: int) -> None:
            await self._broadcaster.emit_playlist_item_progress(
                job_id, index, total, title, percent
            )

        return on_progress

    async def _report_progress(self, job_id: str, percent: int) -> None:
        """Persist and broadcast progress if it moved forward."""
        percent = max(0, min(100, int(percent)))
        if await self._persist_progress(job_id, percent):
            await self._broadcaster.emit_status(job_id, DownloadStatus.PROCESSING, percent)

    @with_db_retry(max_attempts=3)
    async def _persist_progress(self, job_id: str, percent: int) -> bool:
        async with self._session_factory() as session:
            accepted = await QueueJobRepository(session).update_progress(job_id, percent)
            await session.commit()
        return accepted

    @with_db_retry(max_attempts=3)
    async def _record_items(self, job_id: str, total: int, completed: int) -> None:
        async with self._session_factory() as session:
            await QueueJobRepository(session).update_items(job_id, total, completed)
            await session.commit()

    # =========================================================================
    # Finalization (all conditional on status == processing)
    # =========================================================================

    @with_db_retry(max_attempts=3)
    async def _transition_from_processing(
        self, job_id: str, to_status: DownloadStatus, **values: object
    ) -> bool:
        async with self._session_factory() as session:
            matched = await QueueJobRepository(session).transition(
                job_id, [DownloadStatus.PROCESSING], to_status, **values
            )
            await session.commit()
        if not matched:
            logger.info(
                "downloader.finalize_skipped",
                extra={"job_id": job_id, "target_status": to_status.value},
            )
        return matched

    async def _finish_completed(
        self,
        job_id: str,
        media_file: MediaFile | None,
        items: tuple[int, int] | None = None,
    ) -> None:
        values: dict[str, object] = {"progress": 100, "error": None}
        if media_file is not None:
            values["file_id"] = media_file.id
        if items is not None:
            values["items_completed"], values["items_total"] = items

        if not await self._transition_from_processing(
            job_id, DownloadStatus.COMPLETED, **values
        ):
            return

        file_id = media_file.id if media_file else None
        await self._broadcaster.emit_status(
            job_id, DownloadStatus.COMPLETED, 100, {"file_id": file_id}
        )
        await self._broadcaster.emit_complete(
            job_id, file_id, media_file.to_payload() if media_file else None
        )
        logger.info("downloader.job_completed", extra={"job_id": job_id, "file_id": file_id})

    async def _finish_partial(self, job_id: str, succeeded: int, total: int) -> None:
        note = items_summary(succeeded, total)
        if not await self._transition_from_processing(
            job_id,
            DownloadStatus.PARTIALLY_COMPLETED,
            progress=100,
            error=note,
            items_completed=succeeded,
            items_total=total,
        ):
            return

        await self._broadcaster.emit_status(
            job_id, DownloadStatus.PARTIALLY_COMPLETED, 100, {"error": note}
        )
        await self._broadcaster.emit_complete(job_id, None, None)
        logger.info(
            "downloader.job_partially_completed",
            extra={"job_id": job_id, "succeeded": succeeded, "total": total},
        )

    async def _finish_failed(self, job_id: str, message: str) -> None:
        if not await self._transition_from_processing(
            job_id, DownloadStatus.FAILED, error=message
        ):
            return

        async with self._session_factory() as session:
            job = await QueueJobRepository(session).get_by_id(job_id)
        progress = job.progress if job else 0
        await self._broadcaster.emit_status(
            job_id, DownloadStatus.FAILED, progress, {"error": message}
        )
        await self._broadcaster.emit_error(job_id, message)
