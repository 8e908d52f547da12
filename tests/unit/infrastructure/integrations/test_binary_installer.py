"""Tests for BinaryProvisioner (tool discovery and yt-dlp install)."""

import os
import sys
from pathlib import Path

import pytest
from pytest_httpx import HTTPXMock

from tubevault.domain.exceptions import ExternalServiceError
from tubevault.infrastructure.integrations import binary_installer
from tubevault.infrastructure.integrations.binary_installer import YTDLP_URLS, BinaryProvisioner

linux_only = pytest.mark.skipif(not sys.platform.startswith("linux"), reason="linux URLs")


@pytest.fixture(autouse=True)
def empty_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(binary_installer.shutil, "which", lambda name: None)


def _touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"#!/bin/sh\n")
    return path


class TestResolvePaths:
    """Managed bin dir first, then PATH."""

    def test_nothing_found(self, tmp_path: Path) -> None:
        paths = BinaryProvisioner(tmp_path / "bin").resolve_paths()

        assert paths.missing() == ["yt-dlp", "ffmpeg"]

    def test_local_binaries_win(self, tmp_path: Path) -> None:
        bin_path = tmp_path / "bin"
        extractor = _touch(bin_path / binary_installer._exe("yt-dlp"))
        transcoder = _touch(bin_path / binary_installer._exe("ffmpeg"))

        paths = BinaryProvisioner(bin_path).resolve_paths()

        assert paths.extractor == extractor
        assert paths.transcoder == transcoder
        assert paths.missing() == []

    def test_falls_back_to_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            binary_installer.shutil, "which", lambda name: f"/usr/bin/{name}"
        )

        paths = BinaryProvisioner(tmp_path / "bin").resolve_paths()

        assert paths.extractor == Path("/usr/bin/yt-dlp")
        assert paths.transcoder == Path("/usr/bin/ffmpeg")


@linux_only
class TestEnsureInstalled:
    """Installing what is missing."""

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, tmp_path: Path) -> None:
        bin_path = tmp_path / "bin"
        _touch(bin_path / "yt-dlp")
        _touch(bin_path / "ffmpeg")

        paths = await BinaryProvisioner(bin_path).ensure_installed()

        assert paths.missing() == []

    @pytest.mark.asyncio
    async def test_downloads_missing_ytdlp(self, tmp_path: Path, httpx_mock: HTTPXMock) -> None:
        bin_path = tmp_path / "bin"
        _touch(bin_path / "ffmpeg")
        httpx_mock.add_response(url=YTDLP_URLS["linux"], content=b"#!/bin/sh\necho 2026.01.01\n")

        paths = await BinaryProvisioner(bin_path).ensure_installed()

        assert paths.extractor == bin_path / "yt-dlp"
        assert paths.extractor.read_bytes().startswith(b"#!/bin/sh")
        assert os.access(paths.extractor, os.X_OK)

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_partial_file(
        self, tmp_path: Path, httpx_mock: HTTPXMock
    ) -> None:
        bin_path = tmp_path / "bin"
        _touch(bin_path / "ffmpeg")
        httpx_mock.add_response(url=YTDLP_URLS["linux"], status_code=503)

        with pytest.raises(ExternalServiceError):
            await BinaryProvisioner(bin_path).ensure_installed()

        assert not (bin_path / "yt-dlp").exists()
