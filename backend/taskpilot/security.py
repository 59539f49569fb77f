"""
TaskPilot Backend - Token & Password Helpers
=============================================

What:  Issues and verifies HS256 access tokens, hashes and checks passwords.
How:   PyJWT for tokens (signature, exp, iat, iss verified on decode);
       werkzeug.security for salted password hashes.
Who:   UserService.LoginAsync issues tokens; AuthenticationMiddleware
       decodes them into a CallerIdentity.
"""

import datetime as dt
from typing import Any, Dict, Optional

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from taskpilot.config import settings
from taskpilot.dispatch.types import CallerIdentity


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def create_access_token(
    user_id: int,
    username: str,
    email: Optional[str],
    role: str,
    expires_minutes: Optional[int] = None,
) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    lifetime = dt.timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "name": username,
        "email": email,
        "role": role,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Raises:
        jwt.InvalidTokenError (or a subclass such as ExpiredSignatureError)
    """
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "sub"]},
        leeway=10,
    )


def identity_from_claims(claims: Dict[str, Any]) -> CallerIdentity:
    try:
        user_id = int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Token subject is not a user id")
    return CallerIdentity(
        is_authenticated=True,
        user_id=user_id,
        username=claims.get("name"),
        email=claims.get("email"),
        role=claims.get("role") or "User",
        claims=dict(claims),
    )
