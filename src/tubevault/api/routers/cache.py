"""File cache API routes."""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tubevault.api.dependencies import get_file_cache
from tubevault.application.services.file_cache_service import FileCacheService

router = APIRouter(prefix="/cache", tags=["cache"])


class CacheCleanupRequest(BaseModel):
    """Body of POST /cache/cleanup. all=True drops every temporary entry."""

    all: bool = False


class CacheCleanupResponse(BaseModel):
    deleted_count: int
    freed_bytes: int


@router.get("/stats")
async def cache_stats(
    days: int = Query(default=30, ge=1, le=365),
    cache: FileCacheService = Depends(get_file_cache),
) -> dict[str, Any]:
    """Entry counts/sizes plus the hit ratio over the last `days` days."""
    stats = await cache.get_cache_stats()
    stats["hit_ratio"] = await cache.get_hit_ratio(days)
    return stats


@router.post("/cleanup", response_model=CacheCleanupResponse)
async def cache_cleanup(
    body: CacheCleanupRequest | None = None,
    cache: FileCacheService = Depends(get_file_cache),
) -> CacheCleanupResponse:
    if body is not None and body.all:
        result = await cache.delete_all_temporary()
    else:
        result = await cache.cleanup_temporary()
    return CacheCleanupResponse(**result.to_dict())
