"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, message is stored as an attribute so handlers can read it without parsing
    # str(exception). Don't raise this base class directly, pick a subclass so callers can
    # catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when input fails validation.

    Used by queue admission: empty URL, unknown download type, or options
    that don't match the shape required by the download type. Nothing is
    persisted when this is raised.

    HTTP Status: 422
    """

    pass


class InvalidStateException(DomainException):
    """Raised when a job is in the wrong state for the requested operation.

    Example: resuming a job that isn't paused, or pausing a completed job.

    HTTP Status: 409
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration.

    HTTP Status: 503 (Service Unavailable)
    """

    pass


class ExternalServiceError(DomainException):
    """An external tool or service failed.

    HTTP Status: 502 (Bad Gateway)
    """

    pass


# Yo, this is the fail-fast path when yt-dlp/ffmpeg are not installed and couldn't be provisioned.
# We do NOT pretend a download happened - the job goes FAILED with this message so the user sees
# exactly which binary is missing.
class ToolMissingError(ExternalServiceError):
    """Required external binaries are not available."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Required tools missing: {', '.join(missing)}")
        self.missing = missing


class DownloadExecutionError(ExternalServiceError):
    """The extractor process exited unsuccessfully."""

    def __init__(self, exit_code: int | None, detail: str | None = None) -> None:
        message = f"Download failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.exit_code = exit_code


class MetadataFetchError(ExternalServiceError):
    """Metadata (video or playlist info) could not be retrieved or parsed."""

    pass


__all__ = [
    "DomainException",
    "EntityNotFoundException",
    "ValidationException",
    "InvalidStateException",
    "ConfigurationError",
    "ExternalServiceError",
    "ToolMissingError",
    "DownloadExecutionError",
    "MetadataFetchError",
]
