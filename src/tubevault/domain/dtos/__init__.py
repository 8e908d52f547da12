"""Data Transfer Objects returned by the media extractor.

Hey future me - these are "dumb data carriers" between the yt-dlp adapter and the
downloader. The adapter turns yt-dlp's `--dump-json` output into these, so nothing
above the infrastructure layer ever touches raw yt-dlp dicts.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class VideoInfo:
    """Metadata for a single video."""

    id: str
    title: str
    uploader: str | None = None
    duration: int | None = None
    thumbnail: str | None = None
    webpage_url: str | None = None

    @classmethod
    def from_ytdlp(cls, data: dict[str, Any]) -> "VideoInfo":
        """Build from a yt-dlp info dict."""
        duration = data.get("duration")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or "untitled"),
            uploader=data.get("uploader") or data.get("channel"),
            duration=int(duration) if duration else None,
            thumbnail=data.get("thumbnail"),
            webpage_url=data.get("webpage_url") or data.get("url"),
        )


@dataclass
class PlaylistEntry:
    """One entry of a flat playlist listing."""

    id: str
    title: str
    url: str
    uploader: str | None = None
    duration: int | None = None
    thumbnail: str | None = None


@dataclass
class PlaylistInfo:
    """A resolved playlist with its ordered entries."""

    id: str
    title: str
    uploader: str | None = None
    entries: list[PlaylistEntry] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entries)


__all__ = ["PlaylistEntry", "PlaylistInfo", "VideoInfo"]
