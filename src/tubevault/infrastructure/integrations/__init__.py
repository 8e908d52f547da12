"""External tool integrations (yt-dlp, ffmpeg)."""

from .binary_installer import BinaryProvisioner
from .ytdlp_client import YtDlpClient

__all__ = ["BinaryProvisioner", "YtDlpClient"]
