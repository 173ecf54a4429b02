"""
Shared FastAPI dependencies.

Routers import DB session, auth guards and pagination from a single place.
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from domain.enums import UserRole
from domain.errors import AuthorizationError, UnauthorizedError
from middleware.auth import require_token_payload


class Pagination(TypedDict):
    page: int
    limit: int


def pagination_params(
    page: int = Query(1, ge=1, le=10_000),
    limit: int = Query(20, ge=1, le=100),
) -> Pagination:
    return {"page": page, "limit": limit}


async def require_current_user(
    payload: dict = Depends(require_token_payload),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the token subject to a User row.

    The role stored in the database is authoritative over the token claim.
    """
    user = await db.get(User, payload["user_id"])
    if not user:
        raise UnauthorizedError("User account not found for access token.")
    return user


async def require_admin(user: User = Depends(require_current_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Administrator role required for this endpoint.")
    return user
