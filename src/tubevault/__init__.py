"""TubeVault - self-hosted YouTube audio/video downloader."""

__version__ = "0.1.0"
