"""Port interfaces (Hexagonal Architecture).

Hey future me - the application layer ONLY talks to these ABCs. The yt-dlp adapter,
the binary installer and the in-memory broadcaster in infrastructure/ implement them,
and tests swap in fakes without touching subprocesses or the network.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tubevault.domain.dtos import PlaylistInfo, VideoInfo
from tubevault.domain.entities import DownloadStatus, MediaKind

# Called with an integer percentage each time the extractor reports progress
ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class BinaryPaths:
    """Resolved locations of the external tools (None = not available)."""

    extractor: Path | None
    transcoder: Path | None

    def missing(self) -> list[str]:
        names = []
        if self.extractor is None:
            names.append("yt-dlp")
        if self.transcoder is None:
            names.append("ffmpeg")
        return names


class IBinaryProvisioner(ABC):
    """Resolves and installs yt-dlp / ffmpeg."""

    @abstractmethod
    def resolve_paths(self) -> BinaryPaths:
        """Return where the tools live right now (no installation)."""
        pass

    @abstractmethod
    async def ensure_installed(self) -> BinaryPaths:
        """Install missing tools into the managed bin dir. Idempotent."""
        pass


class IMediaExtractor(ABC):
    """Metadata fetching and media download via an external extractor."""

    @abstractmethod
    def missing_tools(self) -> list[str]:
        """Names of required binaries that are currently unavailable."""
        pass

    @abstractmethod
    async def get_info(self, url: str) -> VideoInfo:
        """Fetch metadata of a single video.

        Raises:
            MetadataFetchError: If the extractor fails or output can't be parsed
        """
        pass

    @abstractmethod
    async def get_playlist_info(self, url: str) -> PlaylistInfo:
        """Resolve a playlist into ordered entries.

        Raises:
            MetadataFetchError: If the extractor fails or output can't be parsed
        """
        pass

    @abstractmethod
    async def download(
        self,
        url: str,
        output_path: Path,
        media_kind: MediaKind,
        on_progress: ProgressCallback | None = None,
        job_id: str | None = None,
    ) -> int:
        """Run the extractor and return its exit code.

        job_id identifies the spawned process so kill() can terminate it.
        """
        pass

    @abstractmethod
    async def embed_cover(self, media_path: Path, cover_url: str) -> Path | None:
        """Fetch cover art next to the file and embed it into the audio.

        Returns the saved cover image path (kept as thumbnail), or None when
        the image could not be fetched. A failed embed leaves the audio as is.
        """
        pass

    @abstractmethod
    async def kill(self, job_id: str) -> bool:
        """Terminate the running process for a job. Returns True if one was killed."""
        pass


class IStatusBroadcaster(ABC):
    """Best-effort realtime fan-out of job events, keyed by job id."""

    @abstractmethod
    async def emit_status(
        self,
        job_id: str,
        status: DownloadStatus,
        progress: int,
        extra: dict[str, Any] | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def emit_complete(
        self, job_id: str, file_id: str | None, file_data: dict[str, Any] | None
    ) -> None:
        pass

    @abstractmethod
    async def emit_error(
        self, job_id: str, message: str, item_index: int | None = None
    ) -> None:
        """Job-level error, or a single playlist item failing when item_index is set."""
        pass

    @abstractmethod
    async def emit_playlist_item_progress(
        self, job_id: str, index: int, total: int, title: str, progress: int
    ) -> None:
        pass

    @abstractmethod
    async def emit_playlist_item_complete(
        self,
        job_id: str,
        index: int,
        total: int,
        file_id: str,
        file_data: dict[str, Any],
    ) -> None:
        pass


__all__ = [
    "BinaryPaths",
    "IBinaryProvisioner",
    "IMediaExtractor",
    "IStatusBroadcaster",
    "ProgressCallback",
]
