"""Health check endpoint."""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from tubevault import __version__
from tubevault.infrastructure.persistence.retry import DatabaseLockMetrics

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthStatus(BaseModel):
    """Overall health status response."""

    status: str = Field(description="Overall status: healthy, degraded, unhealthy")
    timestamp: str = Field(description="ISO timestamp of health check")
    version: str = Field(default=__version__, description="Application version")
    uptime_seconds: float | None = Field(
        default=None, description="Seconds since app started"
    )
    checks: dict[str, Any] = Field(
        default_factory=dict, description="Individual component checks"
    )


# Hey future me - missing yt-dlp/ffmpeg makes us "degraded", not "unhealthy". The API still
# works and jobs fail fast with a clear message. Only an unreachable DB is a 503.
@router.get("/health", response_model=HealthStatus)
async def health(request: Request) -> JSONResponse:
    """Database, binaries, queue and worker status."""
    state = request.app.state
    checks: dict[str, Any] = {}
    overall = "healthy"

    db = getattr(state, "db", None)
    try:
        checks["database"] = {
            "ok": db is not None and await db.ping(),
            **DatabaseLockMetrics.get_instance().get_stats(),
        }
    except SQLAlchemyError as e:
        logger.warning("health.database_unreachable", extra={"error": str(e)})
        checks["database"] = {"ok": False, "error": str(e)}
    if not checks["database"]["ok"]:
        overall = "unhealthy"

    extractor = getattr(state, "extractor", None)
    missing = extractor.missing_tools() if extractor is not None else ["yt-dlp", "ffmpeg"]
    checks["binaries"] = {"ok": not missing, "missing": missing}
    if missing and overall == "healthy":
        overall = "degraded"

    queue_manager = getattr(state, "queue_manager", None)
    if queue_manager is not None:
        checks["queue"] = {
            "active": queue_manager.active_count,
            "max_concurrent": queue_manager.max_concurrent,
        }

    maintenance = getattr(state, "maintenance_worker", None)
    if maintenance is not None:
        checks["maintenance_worker"] = maintenance.get_status()

    started_at = getattr(state, "startup_time", None)
    body = HealthStatus(
        status=overall,
        timestamp=datetime.now(UTC).isoformat(),
        uptime_seconds=(datetime.now(UTC) - started_at).total_seconds() if started_at else None,
        checks=checks,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        if overall == "unhealthy"
        else status.HTTP_200_OK,
        content=body.model_dump(),
    )
