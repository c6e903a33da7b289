"""Request ID middleware — one correlation ID per request.

The ID comes from the incoming X-Request-ID header when a proxy already
assigned one, otherwise a fresh UUID. It is bound into structlog's
contextvars so every log line for the request carries it, and echoed
back in the response header (401s from the auth gate included).
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(HEADER) or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response: Response = await call_next(request)
        response.headers[HEADER] = request_id
        return response
