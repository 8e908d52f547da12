"""initial download queue schema

Revision ID: aa01b2c3d4e5
Revises:
Create Date: 2026-10-18 10:00:00.000000

Hey future me - this is the whole schema in one go:
- files: produced media files (library rows)
- download_queue: the persistent job queue, options in their own JSON column
- file_cache: dedup index (normalized title/artist + file type → path)
- cache_stats: one row per day with hit/miss counters
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "aa01b2c3d4e5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "files",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("artist", sa.String(512), nullable=True),
        sa.Column("file_type", sa.String(8), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("path", sa.String(1024), nullable=False),
        sa.Column("thumbnail_path", sa.String(1024), nullable=True),
        sa.Column("source_url", sa.String(1024), nullable=True),
        sa.Column("group_type", sa.String(32), nullable=True),
        sa.Column("group_name", sa.String(512), nullable=True),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_files_group", "files", ["group_type", "group_name"])
    op.create_index("ix_files_created_at", "files", ["created_at"])

    op.create_table(
        "download_queue",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("items_total", sa.Integer(), nullable=True),
        sa.Column("items_completed", sa.Integer(), nullable=True),
        sa.Column(
            "file_id",
            sa.String(36),
            sa.ForeignKey("files.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_download_queue_status", "download_queue", ["status"])
    op.create_index(
        "ix_download_queue_status_created", "download_queue", ["status", "created_at"]
    )

    op.create_table(
        "file_cache",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("artist", sa.String(512), nullable=True),
        sa.Column("normalized_title", sa.String(512), nullable=False),
        sa.Column("normalized_artist", sa.String(512), nullable=False, server_default=""),
        sa.Column("file_type", sa.String(8), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("path", sa.String(1024), nullable=False),
        sa.Column("thumbnail_path", sa.String(1024), nullable=True),
        sa.Column("source_url", sa.String(1024), nullable=True),
        sa.Column("group_type", sa.String(32), nullable=True),
        sa.Column("group_name", sa.String(512), nullable=True),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("is_temporary", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_used_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_file_cache_lookup",
        "file_cache",
        ["normalized_title", "normalized_artist", "file_type"],
    )
    op.create_index(
        "ix_file_cache_temporary_used", "file_cache", ["is_temporary", "last_used_at"]
    )

    op.create_table(
        "cache_stats",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("date", sa.Date(), nullable=False, unique=True),
        sa.Column("total_hits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_misses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("cache_stats")
    op.drop_index("ix_file_cache_temporary_used", table_name="file_cache")
    op.drop_index("ix_file_cache_lookup", table_name="file_cache")
    op.drop_table("file_cache")
    op.drop_index("ix_download_queue_status_created", table_name="download_queue")
    op.drop_index("ix_download_queue_status", table_name="download_queue")
    op.drop_table("download_queue")
    op.drop_index("ix_files_created_at", table_name="files")
    op.drop_index("ix_files_group", table_name="files")
    op.drop_table("files")
