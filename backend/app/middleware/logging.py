"""
NoteDigest Backend — Access Log Middleware
============================================

What:  One log line per request: method, path, status, duration, user,
       request ID.
Why:   Summary latency is dominated by Gemini; a cache hit answers in a few
       milliseconds and a miss in seconds. The duration column makes the
       cache hit rate visible straight from the access log.

What we log vs what we DON'T log (privacy):
    ✅ method, path, status, duration, request ID, user ID, client IP
    ❌ request bodies (note content is personal), response bodies
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.request_id import request_id_var, user_id_var

logger = logging.getLogger("notedigest.access")

# Probed every few seconds by orchestrators; logging them drowns real traffic
_QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request once, after the response is produced.

    Level follows status: 5xx → ERROR, 4xx → WARNING, otherwise INFO.
    A 429 from the quota ledger therefore shows up as a WARNING with the
    user ID attached.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        rid = request_id_var.get("")
        user_id = user_id_var.get("") or "-"
        client_ip = request.client.host if request.client else "unknown"

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] user=%s from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            user_id,
            client_ip,
            extra={
                "request_id": rid,
                "user_id": user_id,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
