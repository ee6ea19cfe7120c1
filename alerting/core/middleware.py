"""
Request middleware: correlation ids and one access-log line per call.

The ``X-Request-ID`` header is honoured when the caller sends one and
echoed on the response, so API calls that create or mutate alerts can
be matched with the log lines they produce.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from alerting.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

# Health checks and API docs get no access-log line
_UNLOGGED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi")


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        set_request_context(request_id=request_id, method=request.method, endpoint=path)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("%s %s failed before a response was sent", request.method, path,
                         extra={"status_code": 500,
                                "duration_ms": (time.perf_counter() - started) * 1000})
            raise
        finally:
            set_request_context()

        response.headers["X-Request-ID"] = request_id
        if not path.startswith(_UNLOGGED_PREFIXES):
            duration_ms = (time.perf_counter() - started) * 1000
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms)", request.method, path, response.status_code, duration_ms,
                extra={"status_code": response.status_code, "duration_ms": duration_ms},
            )
        return response
