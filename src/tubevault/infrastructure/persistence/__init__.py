"""Persistence layer: database engine, ORM models and repositories."""

from .database import Database
from .repositories import FileCacheRepository, FileRepository, QueueJobRepository
from .retry import with_db_retry

__all__ = [
    "Database",
    "FileCacheRepository",
    "FileRepository",
    "QueueJobRepository",
    "with_db_retry",
]
