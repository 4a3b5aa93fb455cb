"""
NoteDigest Backend — Request Context Middleware
=================================================

What:  Gives every request a correlation ID and records the caller identity.
Why:   A summary request fans out into cache, ledger and Gemini log lines;
       the request ID ties them together, and error responses echo it so a
       user can quote it in a support ticket.
How:   Reads X-Request-ID (or generates a short UUID) and X-User-ID, stores
       both in ContextVars, and returns the request ID in the response.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own value
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
USER_ID_HEADER = "X-User-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request ID and captures the authenticated user for logging.

    A client-provided X-Request-ID is kept so traces can start in the
    frontend. The user ID is only recorded here; routes still require it
    through their own dependency.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # 8 chars is enough to correlate log lines and reads well
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]
        request_id_var.set(rid)
        user_id_var.set(request.headers.get(USER_ID_HEADER, ""))
        request.state.request_id = rid

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
