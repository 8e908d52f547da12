"""Application lifecycle management for startup and shutdown tasks.

Startup order:
1. Logging, storage dirs, SQLite path check, database + tables
2. yt-dlp / ffmpeg provisioning (failures are logged, jobs then fail fast)
3. Services: broadcaster, file cache, downloader, queue manager, recovery, maintenance
4. Recovery of interrupted jobs, history cleanup, maintenance loop

Shutdown runs the same list backwards.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.application.workers import (
    Downloader,
    QueueMaintenanceWorker,
    QueueManager,
    QueueRecoveryService,
)
from tubevault.config import Settings, get_settings
from tubevault.domain.exceptions import ConfigurationError, ExternalServiceError
from tubevault.infrastructure.integrations import BinaryProvisioner, YtDlpClient
from tubevault.infrastructure.notifications import InMemoryStatusBroadcaster
from tubevault.infrastructure.observability import configure_logging
from tubevault.infrastructure.persistence import Database

logger = logging.getLogger(__name__)


# Hey future me, this validates the SQLite path BEFORE the engine exists! SQLite creates
# -journal/-wal files next to the .db, so the directory itself must be writable. We don't
# pre-create the .db file, SQLite does that on first connect.
def _validate_sqlite_path(settings: Settings) -> None:
    """Ensure the SQLite database directory exists and is writable."""
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "Update DATABASE__URL or adjust directory permissions."
        ) from exc


async def _provision_binaries(provisioner: BinaryProvisioner, settings: Settings) -> None:
    if not settings.download.auto_install_binaries:
        missing = provisioner.resolve_paths().missing()
        if missing:
            logger.warning("binaries.missing", extra={"missing": missing})
        return
    try:
        paths = await provisioner.ensure_installed()
    except (ExternalServiceError, httpx.HTTPError, OSError) as e:
        # Not fatal: the API stays up, jobs fail with "Required tools missing"
        logger.error("binaries.provisioning_failed", extra={"error": str(e)})
        return
    logger.info(
        "binaries.ready",
        extra={"extractor": str(paths.extractor), "transcoder": str(paths.transcoder)},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()

    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting application: %s", settings.app_name)

    http_client: httpx.AsyncClient | None = None
    try:
        settings.storage.media_path.mkdir(parents=True, exist_ok=True)
        settings.storage.bin_path.mkdir(parents=True, exist_ok=True)
        _validate_sqlite_path(settings)

        db = Database(settings)
        await db.create_tables()
        app.state.db = db
        app.state.startup_time = datetime.now(UTC)
        logger.info("Database initialized: %s", settings.database.url)

        http_client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
        provisioner = BinaryProvisioner(settings.storage.bin_path, client=http_client)
        await _provision_binaries(provisioner, settings)
        extractor = YtDlpClient(provisioner, http_client=http_client)
        app.state.extractor = extractor

        broadcaster = InMemoryStatusBroadcaster()
        file_cache = FileCacheService(
            db.session_factory, max_temp_files=settings.download.max_temp_cache_files
        )
        downloader = Downloader(
            db.session_factory,
            extractor,
            broadcaster,
            file_cache,
            settings.storage.media_path,
        )
        queue_manager = QueueManager(
            db.session_factory,
            downloader,
            broadcaster,
            max_concurrent=settings.download.max_concurrent_downloads,
            job_timeout_seconds=settings.download.job_timeout_seconds,
        )
        recovery = QueueRecoveryService(
            db.session_factory,
            queue_manager,
            recovery_delay_seconds=settings.download.recovery_delay_seconds,
            completed_retention_days=settings.download.completed_retention_days,
            failed_retention_days=settings.download.failed_retention_days,
        )
        maintenance_worker = QueueMaintenanceWorker(
            queue_manager,
            recovery,
            cache=file_cache,
            interval_seconds=settings.download.maintenance_interval_seconds,
            cleanup_interval_seconds=settings.download.cleanup_interval_seconds,
            initial_delay_seconds=settings.download.recovery_delay_seconds,
        )

        app.state.broadcaster = broadcaster
        app.state.file_cache = file_cache
        app.state.queue_manager = queue_manager
        app.state.recovery = recovery
        app.state.maintenance_worker = maintenance_worker

        await recovery.recover()
        await maintenance_worker.start()
        logger.info(
            "Queue ready (max_concurrent=%d, job_timeout=%ds)",
            settings.download.max_concurrent_downloads,
            settings.download.job_timeout_seconds,
        )

        yield

    except Exception as e:
        logger.exception("Error during application startup: %s", e)
        raise
    finally:
        logger.info("Shutting down application")

        # Each step on its own so one failure doesn't leave the rest running
        maintenance_worker = getattr(app.state, "maintenance_worker", None)
        if maintenance_worker is not None:
            try:
                await maintenance_worker.stop()
            except Exception as e:
                logger.exception("Error stopping maintenance worker: %s", e)

        recovery = getattr(app.state, "recovery", None)
        if recovery is not None:
            await recovery.close()

        queue_manager = getattr(app.state, "queue_manager", None)
        if queue_manager is not None:
            try:
                await queue_manager.shutdown()
            except Exception as e:
                logger.exception("Error stopping queue manager: %s", e)

        if http_client is not None:
            await http_client.aclose()

        db = getattr(app.state, "db", None)
        if db is not None:
            try:
                await db.close()
                logger.info("Database connection closed")
            except Exception as e:
                logger.exception("Error closing database: %s", e)
