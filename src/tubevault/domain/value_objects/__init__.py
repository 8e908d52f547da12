"""Value objects and pure helpers for the domain layer."""

from .naming import (
    DEFAULT_CHART_SIZE,
    SINGLE_GROUP_NAME,
    build_file_name,
    chart_group_name,
    date_folder_name,
    group_folder,
    normalize_text,
    sanitize_file_name,
    unique_file_path,
)

__all__ = [
    "DEFAULT_CHART_SIZE",
    "SINGLE_GROUP_NAME",
    "build_file_name",
    "chart_group_name",
    "date_folder_name",
    "group_folder",
    "normalize_text",
    "sanitize_file_name",
    "unique_file_path",
]
