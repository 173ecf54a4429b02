"""
Bearer-token authentication helpers.

Login and registration live in a separate identity service; this backend
only verifies the short-lived HS256 JWT access tokens it issues:

    sub  — user id (string)
    role — student | instructor | admin (informational; the DB role wins)
    iss / iat / exp — required
"""
import logging
from datetime import datetime, timezone, timedelta
from fastapi import Header
from typing import Optional

import jwt

from config import settings
from domain.errors import DomainError, UnauthorizedError

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def _require_secret() -> str:
    if not settings.jwt_secret:
        raise DomainError("Server auth misconfigured (JWT secret missing).", status_code=500)
    return settings.jwt_secret


def decode_access_token(token: str) -> dict:
    secret = _require_secret()
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Access token expired.")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid access token.")

    try:
        payload["user_id"] = int(payload["sub"])
    except (TypeError, ValueError):
        raise UnauthorizedError("Invalid access token subject.")
    return payload


def issue_access_token(*, user_id: int, role: str, ttl_minutes: int | None = None) -> str:
    secret = _require_secret()
    now = _now_utc()
    ttl = ttl_minutes if ttl_minutes is not None else settings.jwt_access_ttl_minutes
    exp = now.replace(microsecond=0) + timedelta(minutes=ttl)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


async def require_token_payload(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> dict:
    """Dependency: decoded bearer token, or 401."""
    token = _parse_bearer_token(authorization)
    if not token:
        raise UnauthorizedError(
            "Authentication required. Provide Authorization: Bearer <token>."
        )
    return decode_access_token(token)
