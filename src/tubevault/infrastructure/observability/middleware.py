"""Middleware for observability: request/response logging."""

import logging
import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from tubevault.infrastructure.observability.logging import (
    get_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

# SSE streams stay open for minutes, logging them as "requests" only adds noise
_QUIET_SUFFIXES = ("/events",)


# Hey future me, this runs before every route. It picks up X-Correlation-ID (or makes one),
# so every log line written while handling the request, including enqueue() and the
# scheduler kick it triggers, carries the same id. The id goes back in the response header.
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        set_correlation_id(request.headers.get("X-Correlation-ID"))

        method = request.method
        path = request.url.path
        quiet = path.endswith(_QUIET_SUFFIXES)

        start_time = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                f"Request failed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": int((time.monotonic() - start_time) * 1000),
                    "error_type": type(e).__name__,
                },
            )
            raise

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if not quiet:
            status_emoji = "✓" if response.status_code < 400 else "✗"
            logger.info(
                f"{status_emoji} {method} {path} → {response.status_code} ({duration_ms}ms)",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "client_ip": request.client.host if request.client else "unknown",
                },
            )

        response.headers["X-Correlation-ID"] = get_correlation_id()
        return response
