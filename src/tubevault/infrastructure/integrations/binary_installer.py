"""Discovery and installation of the yt-dlp and ffmpeg binaries.

Hey future me - tools are looked up in the managed bin dir FIRST (storage.bin_path), then on
PATH. ensure_installed() only downloads what's missing, so calling it on every startup is cheap.
Installation failures are logged and swallowed by the lifespan; the downloader then fails jobs
fast with ToolMissingError instead of pretending to download.
"""

import asyncio
import logging
import shutil
import sys
import tarfile
import tempfile
import zipfile
from pathlib import Path

import httpx

from tubevault.domain.exceptions import ExternalServiceError
from tubevault.domain.ports import BinaryPaths, IBinaryProvisioner

logger = logging.getLogger(__name__)

YTDLP_URLS = {
    "win32": "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe",
    "linux": "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp",
    "darwin": "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos",
}
FFMPEG_URLS = {
    "win32": "https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-win64-gpl.zip",
    "linux": "https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-linux64-gpl.tar.xz",
}

DOWNLOAD_TIMEOUT = httpx.Timeout(30.0, read=300.0)


def _exe(name: str) -> str:
    return f"{name}.exe" if sys.platform == "win32" else name


def _platform_key() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


class BinaryProvisioner(IBinaryProvisioner):
    """Finds yt-dlp/ffmpeg and installs them into a managed bin directory."""

    def __init__(self, bin_path: Path, client: httpx.AsyncClient | None = None) -> None:
        self.bin_path = Path(bin_path)
        self._client = client
        self._lock = asyncio.Lock()

    def _find_executable(self, name: str) -> Path | None:
        """Prefer the locally managed binary, fall back to PATH."""
        local_path = self.bin_path / _exe(name)
        if local_path.is_file():
            return local_path
        found = shutil.which(name)
        return Path(found) if found else None

    def resolve_paths(self) -> BinaryPaths:
        return BinaryPaths(
            extractor=self._find_executable("yt-dlp"),
            transcoder=self._find_executable("ffmpeg"),
        )

    async def ensure_installed(self) -> BinaryPaths:
        """Install whatever is missing. Safe to call repeatedly and concurrently."""
        async with self._lock:
            paths = self.resolve_paths()
            if not paths.missing():
                return paths

            self.bin_path.mkdir(parents=True, exist_ok=True)
            if paths.extractor is None:
                await self._install_ytdlp()
            if paths.transcoder is None:
                await self._install_ffmpeg()

            paths = self.resolve_paths()
            logger.info(
                "binaries.resolved",
                extra={
                    "extractor": str(paths.extractor) if paths.extractor else None,
                    "transcoder": str(paths.transcoder) if paths.transcoder else None,
                },
            )
            return paths

    async def _download(self, url: str, target: Path) -> None:
        client = self._client or httpx.AsyncClient(
            timeout=DOWNLOAD_TIMEOUT, follow_redirects=True
        )
        try:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with target.open("wb") as fh:
                    async for chunk in response.aiter_bytes(64 * 1024):
                        fh.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise ExternalServiceError(f"Failed to download {url}: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

    async def _install_ytdlp(self) -> None:
        url = YTDLP_URLS.get(_platform_key())
        if url is None:
            raise ExternalServiceError(f"Unsupported platform for yt-dlp: {sys.platform}")
        target = self.bin_path / _exe("yt-dlp")
        logger.info("binaries.installing", extra={"tool": "yt-dlp", "url": url})
        await self._download(url, target)
        target.chmod(0o755)

    async def _install_ffmpeg(self) -> None:
        url = FFMPEG_URLS.get(_platform_key())
        if url is None:
            raise ExternalServiceError(f"Unsupported platform for ffmpeg: {sys.platform}")
        logger.info("binaries.installing", extra={"tool": "ffmpeg", "url": url})

        with tempfile.TemporaryDirectory(prefix="tubevault-ffmpeg-") as tmp:
            archive = Path(tmp) / Path(url).name
            await self._download(url, archive)
            await asyncio.to_thread(self._extract_ffmpeg, archive, Path(tmp) / "x")

    def _extract_ffmpeg(self, archive: Path, extract_dir: Path) -> None:
        """Unpack a static build and copy ffmpeg/ffprobe into the bin dir."""
        if archive.suffix == ".zip":
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(extract_dir)
        else:
            with tarfile.open(archive) as tf:
                tf.extractall(extract_dir, filter="data")

        for name in ("ffmpeg", "ffprobe"):
            matches = [p for p in extract_dir.rglob(_exe(name)) if p.is_file()]
            if not matches:
                if name == "ffmpeg":
                    raise ExternalServiceError("ffmpeg binary not found in downloaded archive")
                continue
            target = self.bin_path / _exe(name)
            shutil.copyfile(matches[0], target)
            target.chmod(0o755)
