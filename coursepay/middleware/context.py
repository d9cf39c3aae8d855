"""
Request context middleware for observability.

Injects a request_id into every request so all log lines and error reports
for one request (including the webhook event it carries) can be correlated.

Headers:
- X-Request-ID: Unique ID for this request (generated if not provided)
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from coursepay.core.context import (
    clear_context,
    generate_request_id,
    set_request_id,
)

logger = structlog.get_logger(__name__)

# Request ID validation to prevent log injection attacks
MAX_ID_LENGTH = 64
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _validate_id(value: Optional[str]) -> Optional[str]:
    """Return the caller-supplied id if it is short and log-safe, else None."""
    if not value:
        return None
    if len(value) > MAX_ID_LENGTH:
        return None
    if not SAFE_ID_PATTERN.match(value):
        return None
    return value


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id, path and method into structlog for the request and
    echoes the request_id back in the response headers.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _validate_id(request.headers.get("X-Request-ID")) or generate_request_id()

        structlog.contextvars.clear_contextvars()
        set_request_id(request_id)
        structlog.contextvars.bind_contextvars(path=request.url.path, method=request.method)
        request.state.request_id = request_id

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            if not request.url.path.startswith("/health"):
                logger.info(
                    "Request completed",
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 1),
                )
            clear_context()
