"""yt-dlp adapter: metadata, downloads with progress, cover embedding.

Hey future me - every external process spawned here is registered under its job id in
`_processes`. kill(job_id) terminates it, and if the awaiting task gets cancelled (pause,
cancel, timeout) the finally block kills it too. No orphaned yt-dlp keeps writing files
after the queue has moved on.
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

import httpx
from mutagen import MutagenError
from mutagen.id3 import APIC, ID3, ID3NoHeaderError

from tubevault.domain.dtos import PlaylistEntry, PlaylistInfo, VideoInfo
from tubevault.domain.entities import MediaKind
from tubevault.domain.exceptions import MetadataFetchError, ToolMissingError
from tubevault.domain.ports import IBinaryProvisioner, IMediaExtractor, ProgressCallback

logger = logging.getLogger(__name__)

PROGRESS_RE = re.compile(r"(\d+(?:\.\d+)?)%")
METADATA_TIMEOUT_SECONDS = 120
WATCH_URL = "https://youtube.com/watch?v={id}"


def parse_progress(line: str) -> int | None:
    """Extract an integer percentage from a yt-dlp output line."""
    match = PROGRESS_RE.search(line)
    if not match:
        return None
    return max(0, min(100, int(float(match.group(1)))))


def build_download_args(
    extractor: Path, transcoder: Path, url: str, output_path: Path, media_kind: MediaKind
) -> list[str]:
    """Command line for one audio or ≤720p video download."""
    args = [str(extractor), "--newline", "--no-playlist"]
    if media_kind is MediaKind.AUDIO:
        args += ["-x", "--audio-format", "mp3", "--audio-quality", "0"]
    else:
        args += [
            "-f",
            "bestvideo[height<=720]+bestaudio/best[height<=720]",
            "--merge-output-format",
            "mp4",
        ]
    args += ["-o", str(output_path), "--ffmpeg-location", str(transcoder), url]
    return args


def detect_image_mime(data: bytes) -> str:
    """PNG or JPEG from magic bytes (JPEG when unsure)."""
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    return "image/jpeg"


def embed_artwork_mp3(media_path: Path, artwork: bytes, mime_type: str) -> None:
    """Replace the front cover (APIC type 3) of an MP3. Blocking, run in a thread."""
    try:
        tags = ID3(str(media_path))
    except ID3NoHeaderError:
        tags = ID3()
    tags.delall("APIC")
    tags.add(APIC(encoding=3, mime=mime_type, type=3, desc="Cover", data=artwork))
    tags.save(str(media_path), v2_version=3)


def parse_playlist_output(output: str) -> PlaylistInfo:
    """Turn `--dump-json --flat-playlist` output (one JSON object per line) into a PlaylistInfo."""
    rows: list[dict[str, Any]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rows.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise MetadataFetchError("Could not parse playlist JSON") from e

    entries = []
    for row in rows:
        entry_id = str(row.get("id") or "")
        url = row.get("url") or row.get("webpage_url")
        if not url or not str(url).startswith("http"):
            url = WATCH_URL.format(id=entry_id)
        duration = row.get("duration")
        thumbnails = row.get("thumbnails") or []
        entries.append(
            PlaylistEntry(
                id=entry_id,
                title=str(row.get("title") or "untitled"),
                url=str(url),
                uploader=row.get("uploader") or row.get("channel"),
                duration=int(duration) if duration else None,
                thumbnail=row.get("thumbnail")
                or (thumbnails[-1].get("url") if thumbnails else None),
            )
        )

    first = rows[0] if rows else {}
    return PlaylistInfo(
        id=str(first.get("playlist_id") or "unknown"),
        title=str(first.get("playlist_title") or "Unknown playlist"),
        uploader=first.get("playlist_uploader"),
        entries=entries,
    )


class YtDlpClient(IMediaExtractor):
    """IMediaExtractor backed by the yt-dlp and ffmpeg binaries."""

    def __init__(
        self, provisioner: IBinaryProvisioner, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self._provisioner = provisioner
        self._http_client = http_client
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._processes_lock = asyncio.Lock()

    def missing_tools(self) -> list[str]:
        return self._provisioner.resolve_paths().missing()

    def _require_tools(self) -> tuple[Path, Path]:
        paths = self._provisioner.resolve_paths()
        missing = paths.missing()
        if missing or paths.extractor is None or paths.transcoder is None:
            raise ToolMissingError(missing)
        return paths.extractor, paths.transcoder

    async def _run_capture(self, args: list[str]) -> str:
        """Run a short-lived command and return stdout, raising on failure."""
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=METADATA_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise MetadataFetchError("yt-dlp metadata request timed out") from e
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip().splitlines()
            raise MetadataFetchError(
                f"yt-dlp exited with code {process.returncode}"
                + (f": {detail[-1]}" if detail else "")
            )
        return stdout.decode("utf-8", "replace")

    async def get_info(self, url: str) -> VideoInfo:
        extractor, _ = self._require_tools()
        output = await self._run_capture(
            [str(extractor), "--dump-json", "--no-playlist", url]
        )
        try:
            data = json.loads(output.strip().splitlines()[0])
        except (json.JSONDecodeError, IndexError) as e:
            raise MetadataFetchError("Could not parse video JSON") from e
        return VideoInfo.from_ytdlp(data)

    async def get_playlist_info(self, url: str) -> PlaylistInfo:
        extractor, _ = self._require_tools()
        output = await self._run_capture(
            [str(extractor), "--dump-json", "--flat-playlist", url]
        )
        return parse_playlist_output(output)

    async def download(
        self,
        url: str,
        output_path: Path,
        media_kind: MediaKind,
        on_progress: ProgressCallback | None = None,
        job_id: str | None = None,
    ) -> int:
        extractor, transcoder = self._require_tools()
        args = build_download_args(extractor, transcoder, url, output_path, media_kind)
        key = job_id or str(output_path)

        async with self._processes_lock:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            self._processes[key] = process

        last_progress = -1
        try:
            assert process.stdout is not None
            while True:
                line_bytes = await process.stdout.readline()
                if not line_bytes:
                    break
                line = line_bytes.decode("utf-8", "replace").strip()
                percent = parse_progress(line)
                if percent is not None and percent > last_progress:
                    last_progress = percent
                    if on_progress is not None:
                        await on_progress(percent)
                elif line.startswith("ERROR"):
                    logger.warning("ytdlp.error_output", extra={"job_id": job_id, "line": line})
            return await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            async with self._processes_lock:
                self._processes.pop(key, None)

    async def kill(self, job_id: str) -> bool:
        async with self._processes_lock:
            process = self._processes.get(job_id)
        if process is None or process.returncode is not None:
            return False
        process.kill()
        logger.info("ytdlp.process_killed", extra={"job_id": job_id, "pid": process.pid})
        return True

    async def embed_cover(self, media_path: Path, cover_url: str) -> Path | None:
        """Download cover art next to the file and embed it as an APIC frame."""
        client = self._http_client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        try:
            response = await client.get(cover_url)
            response.raise_for_status()
            artwork = response.content
        except httpx.HTTPError as e:
            logger.warning("ytdlp.cover_download_failed", extra={"url": cover_url, "error": str(e)})
            return None
        finally:
            if self._http_client is None:
                await client.aclose()

        mime_type = detect_image_mime(artwork)
        extension = "png" if mime_type == "image/png" else "jpg"
        cover_path = media_path.with_name(f"{media_path.stem}_cover.{extension}")
        cover_path.write_bytes(artwork)

        try:
            await asyncio.to_thread(embed_artwork_mp3, media_path, artwork, mime_type)
        except MutagenError as e:
            # The MP3 stays usable without artwork, keep the image as thumbnail
            logger.warning(
                "ytdlp.cover_embed_failed", extra={"path": str(media_path), "error": str(e)}
            )
        return cover_path
