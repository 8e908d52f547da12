"""Application services."""

from .file_cache_service import CacheHit, CleanupResult, FileCacheService

__all__ = ["CacheHit", "CleanupResult", "FileCacheService"]
