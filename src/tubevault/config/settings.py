"""Application settings loaded from environment variables and .env files."""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = "sqlite+aiosqlite:///./data/tubevault.db"
    echo: bool = False
    pool_pre_ping: bool = True
    # PostgreSQL only, SQLite ignores pooling
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600


class StorageSettings(BaseModel):
    """Filesystem locations for media and managed binaries."""

    media_path: Path = Path("./storage")
    bin_path: Path = Path("./bin")


# Hey future me, max_concurrent_downloads=1 is the DEFAULT on purpose! yt-dlp + ffmpeg are heavy
# and YouTube throttles parallel pulls from the same IP. Raise it only if you know your box can
# take it. job_timeout_seconds=0 disables the per-job watchdog entirely.
class DownloadSettings(BaseModel):
    """Download queue and worker settings."""

    max_concurrent_downloads: int = Field(default=1, ge=1)
    job_timeout_seconds: int = Field(default=3600, ge=0)
    recovery_delay_seconds: float = Field(default=2.0, ge=0)
    max_temp_cache_files: int = Field(default=200, ge=0)
    completed_retention_days: int = Field(default=7, ge=1)
    failed_retention_days: int = Field(default=30, ge=1)
    maintenance_interval_seconds: int = Field(default=10, ge=1)
    cleanup_interval_seconds: int = Field(default=86400, ge=60)
    auto_install_binaries: bool = True


class ObservabilitySettings(BaseModel):
    """Logging settings."""

    log_json_format: bool = False


class Settings(BaseSettings):
    """Root settings object.

    Nested groups are addressed with a double underscore in env vars,
    e.g. ``DOWNLOAD__MAX_CONCURRENT_DOWNLOADS=2`` or ``DATABASE__URL=...``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = "tubevault"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level

    def _get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite file path, or None for in-memory/non-SQLite URLs."""
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path == ":memory:":
            return None
        return Path(path)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
