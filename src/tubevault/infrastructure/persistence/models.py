"""SQLAlchemy ORM models for TubeVault."""

import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use naive datetime.now() - the
# retention cleanups compare updated_at against a cutoff and mixed timezones would delete the
# wrong rows.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! Datetimes come back naive. Use this
# before comparing DB values with datetime.now(UTC) or you get "can't compare offset-naive
# and offset-aware" TypeErrors.
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class FileModel(Base):
    """A produced media file (library row)."""

    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    artist: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_type: Mapped[str] = mapped_column(String(8), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    source_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    group_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_files_group", "group_type", "group_name"),
        Index("ix_files_created_at", "created_at"),
    )


# Listen up, QueueJobModel is THE persistent queue! Every enqueue() writes a row here before
# anything runs, so a crash never loses a request. options is its OWN JSON column - error
# is for error messages only. file_id uses ON DELETE SET NULL so deleting a library file
# never cascades into queue history.
class QueueJobModel(Base):
    """SQLAlchemy model for QueueJob entity."""

    __tablename__ = "download_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", index=True
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    items_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    items_completed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("files.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        # FIFO admission scans pending rows ordered by created_at
        Index("ix_download_queue_status_created", "status", "created_at"),
    )


class FileCacheModel(Base):
    """Dedup index entry: (normalized title, normalized artist, file type) → file on disk."""

    __tablename__ = "file_cache"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    artist: Mapped[str | None] = mapped_column(String(512), nullable=True)
    normalized_title: Mapped[str] = mapped_column(String(512), nullable=False)
    normalized_artist: Mapped[str] = mapped_column(
        String(512), nullable=False, default=""
    )
    file_type: Mapped[str] = mapped_column(String(8), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    thumbnail_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    source_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    group_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    group_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_temporary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        Index(
            "ix_file_cache_lookup",
            "normalized_title",
            "normalized_artist",
            "file_type",
        ),
        Index("ix_file_cache_temporary_used", "is_temporary", "last_used_at"),
    )


class CacheStatsModel(Base):
    """Daily cache hit/miss counters."""

    __tablename__ = "cache_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    day: Mapped[date] = mapped_column("date", Date, nullable=False, unique=True)
    total_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_misses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )
