"""
TaskPilot Backend - Request ID Middleware
==========================================

What:  Assigns a correlation ID to each request and echoes it in X-Request-ID.
Why:   Every log line and every error body of one request share the same ID.
How:   Reuses a client-supplied X-Request-ID or generates a short UUID, then
       stores it in a ContextVar (for loggers and the dispatcher) and in
       request.state (for handlers).
When:  Outermost of the application middlewares.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local, so concurrent requests never see each other's ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware that assigns a unique ID to each request for tracing."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
