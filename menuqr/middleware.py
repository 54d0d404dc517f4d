"""Request context middleware for structured logging."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# Health checks hit these every few seconds; logging them drowns the real traffic
_QUIET_PATHS = frozenset({"/health", "/"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request_id to the structlog context for the whole request.

    An incoming X-Request-ID is reused so traces line up with the caller's
    logs; otherwise one is generated. The id is echoed back in the response
    headers and each request ends with a ``request_completed`` line carrying
    the status code and duration.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            if request.url.path not in _QUIET_PATHS:
                logger.info(
                    "request_completed",
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2),
                )
            return response
        finally:
            structlog.contextvars.clear_contextvars()
