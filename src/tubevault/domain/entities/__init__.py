"""Domain entities for the download queue."""

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import uuid4

from tubevault.domain.exceptions import InvalidStateException, ValidationException

# Stored in QueueJob.error when the user cancels. Cancellation is modelled as FAILED
# with this sentinel so history views keep a single "failed" bucket.
CANCELLED_MESSAGE = "Cancelled by user"


class DownloadStatus(str, Enum):
    """Status of a queued download job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    # Playlist finished but some items failed; error holds the "X of Y" note
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        DownloadStatus.COMPLETED,
        DownloadStatus.PARTIALLY_COMPLETED,
        DownloadStatus.FAILED,
    }
)


class MediaKind(str, Enum):
    """What the extractor should produce."""

    AUDIO = "audio"
    VIDEO = "video"

    @property
    def file_type(self) -> str:
        """File type label stored on File / FileCacheEntry rows."""
        return "MP3" if self is MediaKind.AUDIO else "MP4"

    @property
    def extension(self) -> str:
        return "mp3" if self is MediaKind.AUDIO else "mp4"


class DownloadType(str, Enum):
    """The four download variants."""

    MP3 = "mp3"
    VIDEO_720P = "video720p"
    PLAYLIST_MP3 = "playlist_mp3"
    PLAYLIST_VIDEO = "playlist_video"

    @property
    def is_playlist(self) -> bool:
        return self in (DownloadType.PLAYLIST_MP3, DownloadType.PLAYLIST_VIDEO)

    @property
    def media_kind(self) -> MediaKind:
        if self in (DownloadType.MP3, DownloadType.PLAYLIST_MP3):
            return MediaKind.AUDIO
        return MediaKind.VIDEO


class FileGroupType(str, Enum):
    """How produced files are grouped into folders."""

    YOUTUBE_SINGLE = "youtube_single"
    YOUTUBE_PLAYLIST = "youtube_playlist"
    CHART = "chart"


# =============================================================================
# Job options (tagged union keyed by DownloadType)
# =============================================================================


# Hey future me, options used to be smuggled through the error column as a JSON string. Never again!
# Options live in their own column and are validated HERE at admission, so a typo'd key or a
# rank of "abc" is rejected before a row exists.
@dataclass
class SingleDownloadOptions:
    """Options for single audio/video downloads (mp3, video720p)."""

    title: str | None = None
    artist: str | None = None
    rank: int | None = None
    is_chart: bool = False
    chart_size: int = 30
    cover_url: str | None = None

    KIND: ClassVar[str] = "single"

    def __post_init__(self) -> None:
        if self.rank is not None and self.rank < 1:
            raise ValidationException("rank must be >= 1")
        if self.chart_size < 1:
            raise ValidationException("chart_size must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.KIND, **asdict(self)}


@dataclass
class PlaylistDownloadOptions:
    """Options for playlist downloads."""

    group_name: str | None = None

    KIND: ClassVar[str] = "playlist"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.KIND, **asdict(self)}


JobOptions = SingleDownloadOptions | PlaylistDownloadOptions

_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "title": (str,),
    "artist": (str,),
    "rank": (int,),
    "is_chart": (bool,),
    "chart_size": (int,),
    "cover_url": (str,),
    "group_name": (str,),
}


def parse_job_options(
    download_type: DownloadType, raw: dict[str, Any] | None
) -> JobOptions:
    """Validate raw options against the shape required by the download type.

    Raises:
        ValidationException: On unknown keys, wrong value types or bad values
    """
    option_cls: type[SingleDownloadOptions] | type[PlaylistDownloadOptions] = (
        PlaylistDownloadOptions if download_type.is_playlist else SingleDownloadOptions
    )
    data = dict(raw or {})
    kind = data.pop("kind", option_cls.KIND)
    if kind != option_cls.KIND:
        raise ValidationException(
            f"Options of kind '{kind}' are not valid for download type '{download_type.value}'"
        )

    allowed = {f.name for f in fields(option_cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValidationException(
            f"Unknown options for '{download_type.value}': {', '.join(unknown)}"
        )

    for key, value in data.items():
        if value is None:
            continue
        expected = _FIELD_TYPES[key]
        # bool is a subclass of int, don't let True through as a rank
        if isinstance(value, bool) and bool not in expected:
            raise ValidationException(f"Option '{key}' has invalid type")
        if not isinstance(value, expected):
            raise ValidationException(f"Option '{key}' has invalid type")

    if "chart_size" in data and data["chart_size"] is None:
        del data["chart_size"]
    if "is_chart" in data and data["is_chart"] is None:
        del data["is_chart"]

    return option_cls(**data)


# =============================================================================
# Queue job
# =============================================================================


# Hey future me, QueueJob is the persisted unit of work! State machine:
#   PENDING → PROCESSING → {COMPLETED | PARTIALLY_COMPLETED | FAILED}
#   PENDING/PROCESSING → PAUSED → PENDING (resume)
#   any non-terminal → FAILED("Cancelled by user") (cancel)
# progress only ratchets UP while PROCESSING. Worker-side moves (claim, progress, finish) happen
# only as conditional UPDATEs in QueueJobRepository. The user-facing moves below (cancel, pause,
# resume) check the loaded row first so the API can answer 409 before touching the DB.
@dataclass
class QueueJob:
    """A persisted download request."""

    id: str
    url: str
    type: DownloadType
    status: DownloadStatus = DownloadStatus.PENDING
    progress: int = 0
    error: str | None = None
    options: JobOptions | None = None
    items_total: int | None = None
    items_completed: int | None = None
    file_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise ValidationException("url must not be empty")
        if self.progress < 0 or self.progress > 100:
            raise ValidationException("progress must be between 0 and 100")

    @classmethod
    def create(
        cls,
        url: str,
        download_type: DownloadType,
        options: JobOptions | None = None,
    ) -> "QueueJob":
        return cls(id=str(uuid4()), url=url.strip(), type=download_type, options=options)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.status == DownloadStatus.FAILED and self.error == CANCELLED_MESSAGE

    def _touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def cancel(self) -> None:
        if self.is_terminal:
            raise InvalidStateException(f"Cannot cancel job in status {self.status.value}")
        self.status = DownloadStatus.FAILED
        self.error = CANCELLED_MESSAGE
        self._touch()

    def pause(self) -> None:
        if self.status not in (DownloadStatus.PENDING, DownloadStatus.PROCESSING):
            raise InvalidStateException(f"Cannot pause job in status {self.status.value}")
        self.status = DownloadStatus.PAUSED
        self._touch()

    def resume(self) -> None:
        if self.status != DownloadStatus.PAUSED:
            raise InvalidStateException(f"Cannot resume job in status {self.status.value}")
        self.status = DownloadStatus.PENDING
        self._touch()


def items_summary(succeeded: int, total: int) -> str:
    """Human-readable playlist outcome note."""
    return f"{succeeded} of {total} items downloaded"


# =============================================================================
# Files and cache
# =============================================================================


@dataclass
class MediaFile:
    """A produced media file registered in the library."""

    id: str
    title: str
    file_type: str
    file_size: int
    path: str
    artist: str | None = None
    duration: int | None = None
    thumbnail_path: str | None = None
    source_url: str | None = None
    group_type: FileGroupType | None = None
    group_name: str | None = None
    rank: int | None = None
    download_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_payload(self) -> dict[str, Any]:
        """Shape broadcast to clients on completion."""
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "duration": self.duration,
            "group_type": self.group_type.value if self.group_type else None,
            "group_name": self.group_name,
            "rank": self.rank,
        }


# Listen up, is_temporary decides eviction! Ad-hoc single downloads are temporary and get pruned
# once there are more than max_temp_cache_files of them. Chart entries are durable - only the
# self-healing path (file gone from disk) ever removes them.
@dataclass
class FileCacheEntry:
    """A dedup index entry pointing at a file on disk."""

    id: str
    title: str
    normalized_title: str
    normalized_artist: str
    file_type: str
    file_size: int
    path: str
    artist: str | None = None
    duration: int | None = None
    thumbnail_path: str | None = None
    source_url: str | None = None
    group_type: FileGroupType | None = None
    group_name: str | None = None
    rank: int | None = None
    is_temporary: bool = True
    last_used_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


__all__ = [
    "CANCELLED_MESSAGE",
    "DownloadStatus",
    "DownloadType",
    "FileCacheEntry",
    "FileGroupType",
    "JobOptions",
    "MediaFile",
    "MediaKind",
    "PlaylistDownloadOptions",
    "QueueJob",
    "SingleDownloadOptions",
    "items_summary",
    "parse_job_options",
]
