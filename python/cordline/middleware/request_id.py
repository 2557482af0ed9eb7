"""X-Request-ID middleware for request correlation.

Must be added LAST so it runs FIRST (Starlette middleware wraps in reverse
order); auth failures then still carry X-Request-ID.
"""

import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from cordline.logging import bind_log_context, clear_log_context, get_logger

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

# Non-UUID request ids: alphanumeric, dots, hyphens, underscores
VALID_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

logger = get_logger(__name__)


def resolve_request_id(incoming: str | None) -> str:
    """Return the normalized incoming id, or a fresh UUID4 if absent or invalid.

    UUIDs are lowercased to canonical form; other valid ids pass through as-is.
    """
    if not incoming or len(incoming.encode("utf-8")) > MAX_REQUEST_ID_LENGTH:
        return str(uuid.uuid4())
    if UUID_PATTERN.match(incoming):
        return incoming.lower()
    if VALID_REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id, echo it back, and emit one access log per request."""

    def __init__(self, app, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()

        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        clear_log_context()
        bind_log_context(request_id=request_id, path=request.url.path, method=request.method)

        try:
            response = await call_next(request)

            viewer = getattr(request.state, "viewer", None)
            if viewer is not None:
                bind_log_context(user_id=viewer.user_id)

            response.headers[REQUEST_ID_HEADER] = request_id

            if self.log_requests:
                logger.info(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
            return response
        except Exception:
            logger.exception("request_failed")
            raise
        finally:
            clear_log_context()
