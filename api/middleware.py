"""Request id middleware using ContextVar.

Takes the request id from the X-Request-ID header (or generates one) and
binds it for the duration of the request, so every log line emitted while
handling it, including those from sync runs it starts, carries the id.
"""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sync_core.observability.logging_setup import reset_request_id, set_request_id

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind X-Request-ID (or a fresh uuid4 hex) and echo it on the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            reset_request_id(token)
