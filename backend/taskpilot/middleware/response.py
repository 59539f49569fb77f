"""
TaskPilot Backend - Response Serializer Middleware
===================================================

What:  Writes the HTTP response for a completed dispatch.
How:   If DispatchMiddleware stashed a result on request.state, render it
       by value shape (see dispatch/serializer.py) and stop. Otherwise the
       request was not dispatched, so hand it to the router untouched.
       A value that cannot be rendered (e.g. not JSON-encodable) gets the
       dispatcher's 500 body, never a bare server error.
When:  Directly inside DispatchMiddleware.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from taskpilot.dispatch.serializer import render_result
from taskpilot.dispatch.types import ServiceMethodKey
from taskpilot.middleware.dispatch import (
    DISPATCH_COMPLETED_ATTR,
    DISPATCH_KEY_ATTR,
    DISPATCH_RESULT_ATTR,
    fault_response,
)
from taskpilot.middleware.request_id import request_id_var


class ResponseSerializerMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not getattr(request.state, DISPATCH_COMPLETED_ATTR, False):
            return await call_next(request)

        result = getattr(request.state, DISPATCH_RESULT_ATTR, None)
        # The stash is per request; drop it once it has been written
        setattr(request.state, DISPATCH_RESULT_ATTR, None)
        try:
            return await render_result(result)
        except Exception as exc:
            key = getattr(request.state, DISPATCH_KEY_ATTR, None) or ServiceMethodKey("?", "?")
            return fault_response(key, exc, request_id_var.get(""))
