from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.config import get_settings
from keygate.domain.models import TrackedUser
from keygate.persistence.db import get_session
from keygate.services.auth.sessions import InvalidSessionToken, verify_session_token
from keygate.services.key_backend import KeyBackend, get_key_backend
from keygate.services.login import ROLE_ADMIN


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_backend() -> KeyBackend:
    # Overridden in tests with an in-memory backend.
    return get_key_backend()


class Principal(BaseModel):
    # Identity carried by the session token; role is re-checked for admin routes.
    user_id: str
    external_id: int
    username: str
    role: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_user(request: Request) -> Principal:
    # Browsers send the session cookie; API clients may send the same token as Bearer.
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        token = _parse_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise _auth_error("Missing session")
    try:
        claims = verify_session_token(token)
    except InvalidSessionToken:
        raise _auth_error("Invalid or expired session")
    return Principal(
        user_id=claims.user_id,
        external_id=claims.external_id,
        username=claims.username,
        role=claims.role,
    )


async def require_admin(
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> TrackedUser:
    # Stored role and ban flag win over whatever the token claims.
    user = await db.get(TrackedUser, principal.user_id, populate_existing=True)
    if user is None or user.is_banned or user.role != ROLE_ADMIN:
        raise _forbidden_error("Admin role required")
    return user
