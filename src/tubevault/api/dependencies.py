"""Dependency injection for API endpoints.

Everything here is read from app.state, where the lifespan put it. A missing attribute means
the lifespan didn't run (or failed half-way), which we report as 503 instead of a 500.
"""

from typing import Any

from fastapi import HTTPException, Request, status

from tubevault.application.services.file_cache_service import FileCacheService
from tubevault.application.workers.queue_manager import QueueManager
from tubevault.infrastructure.notifications import InMemoryStatusBroadcaster


def _from_state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not initialized",
        )
    return value


def get_queue_manager(request: Request) -> QueueManager:
    return _from_state(request, "queue_manager")


def get_file_cache(request: Request) -> FileCacheService:
    return _from_state(request, "file_cache")


def get_broadcaster(request: Request) -> InMemoryStatusBroadcaster:
    return _from_state(request, "broadcaster")
