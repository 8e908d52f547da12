"""File cache / deduplication index.

Hey future me - this is what keeps us from downloading the same song twice! Before a single
or playlist item hits yt-dlp, the downloader asks find_duplicate(title, artist, file_type).
On a hit we copy the cached file (new name, new File row, caller's grouping) instead of
spawning any external tool.

The cache is self-healing: an entry whose file vanished from disk is deleted on lookup and
reported as a miss. Temporary entries (ad-hoc singles) are capped by cleanup_temporary();
durable entries (chart items) are only ever removed by that self-healing path.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tubevault.domain.entities import FileCacheEntry, FileGroupType, MediaFile
from tubevault.domain.value_objects import normalize_text
from tubevault.infrastructure.persistence.repositories import (
    FileCacheRepository,
    FileRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEMP_FILES = 200


@dataclass
class CacheHit:
    """Result of a successful duplicate lookup."""

    id: str
    path: str
    thumbnail_path: str | None


@dataclass
class CleanupResult:
    """Outcome of a retention pass."""

    deleted_count: int = 0
    freed_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"deleted_count": self.deleted_count, "freed_bytes": self.freed_bytes}


def _is_local_path(value: str | None) -> bool:
    # Thumbnails may be remote URLs (yt-dlp thumbnail), only local files are copied/deleted
    return bool(value) and "://" not in str(value)


class FileCacheService:
    """Dedup lookups, cache copies and temporary-entry retention."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_temp_files: int = DEFAULT_MAX_TEMP_FILES,
    ) -> None:
        self._session_factory = session_factory
        self._max_temp_files = max_temp_files

    async def find_duplicate(
        self, title: str, artist: str | None, file_type: str
    ) -> CacheHit | None:
        """Most recently used entry for (title, artist, file_type), or None.

        Lookup failures are logged and reported as a miss; a broken cache must
        never fail a download.
        """
        key = (normalize_text(title), normalize_text(artist), file_type.upper())
        today = datetime.now(UTC).date()

        try:
            async with self._session_factory() as session:
                repo = FileCacheRepository(session)
                entry = await repo.find_most_recent(*key)

                if entry is not None and not Path(entry.path).is_file():
                    logger.info(
                        "cache.stale_entry_removed",
                        extra={"cache_id": entry.id, "path": entry.path},
                    )
                    await repo.delete(entry.id)
                    entry = None

                if entry is not None:
                    await repo.touch(entry.id)
                await repo.record_lookup(hit=entry is not None, day=today)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "cache.lookup_failed", extra={"title": title, "error": str(e)}
            )
            return None

        if entry is None:
            logger.debug("cache.miss", extra={"title": title, "artist": artist})
            return None

        logger.info("cache.hit", extra={"title": title, "artist": artist, "path": entry.path})
        return CacheHit(id=entry.id, path=entry.path, thumbnail_path=entry.thumbnail_path)

    async def add_entry(
        self,
        title: str,
        artist: str | None,
        file_type: str,
        file_size: int,
        path: str,
        duration: int | None = None,
        thumbnail_path: str | None = None,
        source_url: str | None = None,
        group_type: FileGroupType | None = None,
        group_name: str | None = None,
        rank: int | None = None,
        is_temporary: bool = True,
    ) -> FileCacheEntry:
        """Register a freshly produced file in the dedup index."""
        entry = FileCacheEntry(
            id=str(uuid.uuid4()),
            title=title,
            artist=artist,
            normalized_title=normalize_text(title),
            normalized_artist=normalize_text(artist),
            file_type=file_type.upper(),
            file_size=file_size,
            duration=duration,
            path=path,
            thumbnail_path=thumbnail_path,
            source_url=source_url,
            group_type=group_type,
            group_name=group_name,
            rank=rank,
            is_temporary=is_temporary,
        )
        async with self._session_factory() as session:
            await FileCacheRepository(session).add(entry)
            await session.commit()
        return entry

    async def copy_from_cache(
        self,
        cache_id: str,
        group_type: FileGroupType,
        group_name: str,
        rank: int | None = None,
        target_dir: Path | None = None,
    ) -> MediaFile | None:
        """Duplicate a cached file under a new name and register it as a new File.

        The copy lands in target_dir (or next to the cached file) as
        ``{timestamp}_{original name}``. The thumbnail is copied best-effort.
        Returns None if the entry or its backing file is gone.
        """
        async with self._session_factory() as session:
            entry = await FileCacheRepository(session).get_by_id(cache_id)
        if entry is None:
            return None

        source = Path(entry.path)
        stamp = int(time.time() * 1000)
        destination_dir = target_dir or source.parent
        destination = destination_dir / f"{stamp}_{source.name}"

        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, source, destination)
        except FileNotFoundError:
            async with self._session_factory() as session:
                await FileCacheRepository(session).delete(cache_id)
                await session.commit()
            logger.info("cache.stale_entry_removed", extra={"cache_id": cache_id})
            return None

        thumbnail_path = entry.thumbnail_path
        if _is_local_path(entry.thumbnail_path):
            thumb = Path(str(entry.thumbnail_path))
            thumb_copy = destination_dir / f"{stamp}_{thumb.name}"
            try:
                await asyncio.to_thread(shutil.copy2, thumb, thumb_copy)
                thumbnail_path = str(thumb_copy)
            except OSError as e:
                logger.warning(
                    "cache.thumbnail_copy_failed", extra={"path": str(thumb), "error": str(e)}
                )
                thumbnail_path = None

        media_file = MediaFile(
            id=str(uuid.uuid4()),
            title=entry.title,
            artist=entry.artist,
            file_type=entry.file_type,
            file_size=entry.file_size,
            duration=entry.duration,
            path=str(destination),
            thumbnail_path=thumbnail_path,
            source_url=entry.source_url,
            group_type=group_type,
            group_name=group_name,
            rank=rank if rank is not None else entry.rank,
        )
        try:
            async with self._session_factory() as session:
                await FileRepository(session).add(media_file)
                await session.commit()
        except Exception:
            # Don't leave an unreferenced copy behind
            destination.unlink(missing_ok=True)
            raise

        logger.info(
            "cache.copied",
            extra={"cache_id": cache_id, "file_id": media_file.id, "path": str(destination)},
        )
        return media_file

    async def _evict(self, entries: list[FileCacheEntry]) -> CleanupResult:
        result = CleanupResult()
        async with self._session_factory() as session:
            repo = FileCacheRepository(session)
            for entry in entries:
                try:
                    Path(entry.path).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(
                        "cache.evict_failed", extra={"path": entry.path, "error": str(e)}
                    )
                    continue
                if _is_local_path(entry.thumbnail_path):
                    try:
                        Path(str(entry.thumbnail_path)).unlink(missing_ok=True)
                    except OSError as e:
                        logger.warning(
                            "cache.thumbnail_delete_failed",
                            extra={"path": entry.thumbnail_path, "error": str(e)},
                        )
                await repo.delete(entry.id)
                result.deleted_count += 1
                result.freed_bytes += entry.file_size
            await session.commit()
        return result

    async def cleanup_temporary(self, max_temp_files: int | None = None) -> CleanupResult:
        """Keep at most max_temp_files temporary entries, evicting least recently used first."""
        ceiling = self._max_temp_files if max_temp_files is None else max_temp_files
        async with self._session_factory() as session:
            repo = FileCacheRepository(session)
            excess = await repo.count_temporary() - ceiling
            if excess <= 0:
                return CleanupResult()
            victims = await repo.list_temporary(limit=excess)

        result = await self._evict(victims)
        logger.info(
            "cache.temporary_cleanup",
            extra={"ceiling": ceiling, **result.to_dict()},
        )
        return result

    async def delete_all_temporary(self) -> CleanupResult:
        """Remove every temporary entry and its files."""
        async with self._session_factory() as session:
            victims = await FileCacheRepository(session).list_temporary()
        result = await self._evict(victims)
        logger.info("cache.temporary_purged", extra=result.to_dict())
        return result

    async def get_cache_stats(self) -> dict[str, Any]:
        """Entry counts and byte totals, split into temporary and permanent."""
        async with self._session_factory() as session:
            summary = await FileCacheRepository(session).size_summary()
        return {
            "total_files": summary["temporary_count"] + summary["permanent_count"],
            "total_size": summary["temporary_size"] + summary["permanent_size"],
            **summary,
            "max_temp_files": self._max_temp_files,
        }

    async def get_hit_ratio(self, days: int = 30) -> dict[str, Any]:
        """Hit ratio (percent, 2 decimals) over the last `days` days plus the daily rows."""
        since = datetime.now(UTC).date() - timedelta(days=days)
        async with self._session_factory() as session:
            rows = await FileCacheRepository(session).stats_since(since)

        hits = sum(r.total_hits for r in rows)
        misses = sum(r.total_misses for r in rows)
        lookups = hits + misses
        return {
            "days": days,
            "total_hits": hits,
            "total_misses": misses,
            "hit_ratio": round(hits / lookups * 100, 2) if lookups else 0.0,
            "daily": [
                {"date": r.day.isoformat(), "hits": r.total_hits, "misses": r.total_misses}
                for r in rows
            ],
        }
