"""API routers."""

from fastapi import APIRouter

from . import cache, downloads, health

api_router = APIRouter(prefix="/api")
api_router.include_router(downloads.router)
api_router.include_router(cache.router)
api_router.include_router(health.router)

__all__ = ["api_router"]
