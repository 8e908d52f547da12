"""Configuration module for TubeVault."""

from .settings import (
    DatabaseSettings,
    DownloadSettings,
    ObservabilitySettings,
    Settings,
    StorageSettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "DownloadSettings",
    "ObservabilitySettings",
    "Settings",
    "StorageSettings",
    "get_settings",
]
