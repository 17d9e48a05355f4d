"""Request ID + access logging middleware.

Learn: Every HTTP request gets an ID, either from the incoming
X-Request-ID header (the messaging gateway forwards its own) or a fresh
UUID. The ID is bound to structlog's contextvars, so every log line a
dispatch emits while handling the request carries it, and it is
echoed back in the response header. One "http.request" line per call
records method, path, status and latency.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

QUIET_PATHS = ("/api/v1/health",)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        if request.url.path not in QUIET_PATHS:
            logger.info(
                "http.request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=elapsed_ms,
            )
        return response
