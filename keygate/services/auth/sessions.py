from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from keygate.core.config import get_settings
from keygate.core.errors import SessionConfigError


_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    external_id: int
    username: str
    role: str


class InvalidSessionToken(Exception):
    # Signal a session token that is malformed, forged or expired.
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _signing_secret() -> str:
    secret = get_settings().session_secret
    if not secret:
        raise SessionConfigError("SESSION_SECRET is not set")
    return secret


def issue_session_token(claims: SessionClaims, *, now: datetime | None = None) -> str:
    # Sign a short-lived session JWT carrying the user identity snapshot.
    issued_at = now or _utc_now()
    payload = {
        "sub": claims.user_id,
        "external_id": claims.external_id,
        "username": claims.username,
        "role": claims.role,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(days=get_settings().session_ttl_days)).timestamp()),
    }
    return jwt.encode(payload, _signing_secret(), algorithm=_ALGORITHM)


def verify_session_token(token: str) -> SessionClaims:
    secret = _signing_secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"require": ["sub", "exp"]})
    except jwt.PyJWTError as exc:
        raise InvalidSessionToken(str(exc)) from exc
    try:
        return SessionClaims(
            user_id=str(payload["sub"]),
            external_id=int(payload.get("external_id", 0)),
            username=str(payload.get("username") or ""),
            role=str(payload.get("role") or "user"),
        )
    except (TypeError, ValueError) as exc:
        raise InvalidSessionToken("session claims are malformed") from exc
