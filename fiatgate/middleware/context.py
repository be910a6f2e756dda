"""
Request context middleware.

Every request gets a request_id bound into structlog's context, plus the
API surface it hit (webhooks, cron, admin, health). Webhook requests also
log the processor event id the route parsed, so a settlement's log lines
can be traced back to the delivery that created or disputed it.

Headers:
- X-Request-ID: echoed when safe, generated otherwise
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from fiatgate.core.context import clear_context, generate_request_id, set_request_id

logger = structlog.get_logger(__name__)

MAX_ID_LENGTH = 64
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")

_SURFACES = (
    ("/api/v1/webhooks", "webhooks"),
    ("/api/v1/cron", "cron"),
    ("/api/v1/admin", "admin"),
    ("/health", "health"),
)


def _validate_id(value: Optional[str]) -> Optional[str]:
    if not value or len(value) > MAX_ID_LENGTH or not SAFE_ID_PATTERN.match(value):
        return None
    return value


def surface_for(path: str) -> str:
    for prefix, surface in _SURFACES:
        if path.startswith(prefix):
            return surface
    return "other"


def completion_level(status_code: int) -> str:
    """Log level for the completion line: errors loud, rejected callers as warnings."""
    if status_code >= 500:
        return "error"
    if status_code in (401, 403):
        return "warning"
    return "info"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _validate_id(request.headers.get("X-Request-ID")) or generate_request_id()
        set_request_id(request_id)
        request.state.request_id = request_id
        surface = surface_for(request.url.path)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            surface=surface,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            if surface != "health":
                fields = {
                    "status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 1),
                }
                # Set by the webhook route once the envelope parses
                event_id = getattr(request.state, "event_id", None)
                if event_id:
                    fields["event_id"] = event_id
                getattr(logger, completion_level(status_code))("Request complete", **fields)
            structlog.contextvars.clear_contextvars()
            clear_context()
