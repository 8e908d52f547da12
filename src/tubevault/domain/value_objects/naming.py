"""File and folder naming for downloaded media.

Hey future me - two different cleanups live here and they are NOT interchangeable:

1. sanitize_file_name(): makes a string safe as a file/folder name. Hashtags and
   filesystem-unsafe characters go, whitespace becomes "_", max 150 chars.
2. normalize_text(): builds the dedup cache KEY. Lowercase, punctuation gone,
   whitespace collapsed. Never used for paths.

Folder layout under the media root:
    youtube/YYYYMMDD/                   single downloads
    playlists/<playlist name>/          playlist downloads
    chart/<chart name>_YYYYMMDD/        chart downloads (date added unless already present)
"""

import re
from collections.abc import Collection
from datetime import UTC, date, datetime
from pathlib import Path

from tubevault.domain.entities import FileGroupType

MAX_FILE_NAME_LENGTH = 150
DEFAULT_FILE_NAME = "untitled"
SINGLE_GROUP_NAME = "single"
DEFAULT_CHART_SIZE = 30

_HASHTAG_RE = re.compile(r"#[^\s#]*")
_FORBIDDEN_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_EXTRA_SPECIAL_RE = re.compile(r"[\[\]{}()~`!@$%^&+=;,]")
_WHITESPACE_RE = re.compile(r"\s+")
_UNDERSCORES_RE = re.compile(r"_+")
_DATE_SUFFIX_RE = re.compile(r"_\d{8}$")
# \w already covers Hangul in Python's unicode regex; the explicit range keeps the intent visible
_NON_KEY_CHARS_RE = re.compile(r"[^\w\s가-힣]")


def sanitize_file_name(name: str | None) -> str:
    """Make a title safe to use as a file or folder name."""
    if not name:
        return DEFAULT_FILE_NAME
    cleaned = _HASHTAG_RE.sub("", name)
    cleaned = _FORBIDDEN_RE.sub("", cleaned)
    cleaned = _EXTRA_SPECIAL_RE.sub("", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    cleaned = _UNDERSCORES_RE.sub("_", cleaned.replace(" ", "_")).strip("_")
    # Leading dots would make hidden files (or ".." path tricks)
    cleaned = cleaned.lstrip(".")
    return cleaned[:MAX_FILE_NAME_LENGTH] or DEFAULT_FILE_NAME


def normalize_text(text: str | None) -> str:
    """Dedup key normalization: case-folded, punctuation-stripped, whitespace-collapsed."""
    if not text:
        return ""
    lowered = text.lower()
    stripped = _NON_KEY_CHARS_RE.sub("", lowered)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def date_folder_name(today: date | None = None) -> str:
    """YYYYMMDD in UTC."""
    return (today or datetime.now(UTC).date()).strftime("%Y%m%d")


def chart_group_name(chart_size: int | None) -> str:
    return f"TOP{chart_size or DEFAULT_CHART_SIZE}"


def group_folder(
    media_root: Path,
    group_type: FileGroupType,
    group_name: str,
    today: date | None = None,
) -> Path:
    """Folder a file of the given group is written to."""
    if group_type is FileGroupType.YOUTUBE_SINGLE:
        return media_root / "youtube" / date_folder_name(today)
    safe_name = sanitize_file_name(group_name)
    if group_type is FileGroupType.YOUTUBE_PLAYLIST:
        return media_root / "playlists" / safe_name
    if not _DATE_SUFFIX_RE.search(safe_name):
        safe_name = f"{safe_name}_{date_folder_name(today)}"
    return media_root / "chart" / safe_name


def build_file_name(
    group_type: FileGroupType,
    title: str,
    extension: str,
    rank: int | None = None,
    artist: str | None = None,
) -> str:
    """title_artist.ext, or rank_title_artist.ext for chart entries."""
    parts = [sanitize_file_name(title)]
    if artist:
        parts.append(sanitize_file_name(artist))
    if group_type is FileGroupType.CHART and rank:
        parts.insert(0, str(rank))
    return f"{'_'.join(parts)}.{extension}"


def unique_file_path(path: Path, taken: Collection[Path] = ()) -> Path:
    """path itself if it is free, otherwise stem_1.ext, stem_2.ext, ...

    A path counts as taken when it exists on disk or is listed in ``taken``.
    """
    candidate = path
    counter = 1
    while candidate.exists() or candidate in taken:
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        counter += 1
    return candidate
