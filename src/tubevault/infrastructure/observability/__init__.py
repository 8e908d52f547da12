"""Observability: structured logging and request logging middleware."""

from .logger_template import log_operation, log_worker_health
from .logging import (
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)
from .middleware import RequestLoggingMiddleware

__all__ = [
    "RequestLoggingMiddleware",
    "configure_logging",
    "get_correlation_id",
    "log_operation",
    "log_worker_health",
    "set_correlation_id",
]
