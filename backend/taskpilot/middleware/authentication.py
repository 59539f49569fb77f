"""
TaskPilot Backend - Authentication Middleware
==============================================

What:  Establishes the CallerIdentity for every request.
How:   Looks for a bearer token in, in order:
         1. the HTTP-only cookie (settings.auth_cookie_name)
         2. the Authorization: Bearer header
         3. the query parameter (settings.auth_query_param)
       The first token found is decoded with PyJWT. A valid token yields an
       authenticated identity; a missing or invalid one yields an anonymous
       identity. This stage never rejects a request: the dispatcher's
       access gate decides whether anonymous callers may proceed.
When:  Before DispatchMiddleware.
"""

import logging
from typing import Optional, Tuple

import jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from taskpilot.config import settings
from taskpilot.dispatch.types import CallerIdentity
from taskpilot.middleware.request_id import request_id_var
from taskpilot.security import decode_access_token, identity_from_claims

logger = logging.getLogger(__name__)


def extract_token(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Returns (token, source) where source is 'cookie', 'header' or 'query'."""
    cookie_token = request.cookies.get(settings.auth_cookie_name)
    if cookie_token:
        return cookie_token, "cookie"

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip(), "header"

    query_token = request.query_params.get(settings.auth_query_param)
    if query_token:
        return query_token, "query"

    return None, None


class AuthenticationMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request.state.caller = self.authenticate(request)
        return await call_next(request)

    @staticmethod
    def authenticate(request: Request) -> CallerIdentity:
        token, source = extract_token(request)
        if token is None:
            return CallerIdentity.anonymous()
        try:
            return identity_from_claims(decode_access_token(token))
        except jwt.InvalidTokenError as e:
            logger.warning(
                "[%s] Rejected %s token: %s",
                request_id_var.get(""),
                source,
                type(e).__name__,
            )
            return CallerIdentity.anonymous()
