from __future__ import annotations

from datetime import datetime
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.apps.api.deps import Principal, get_backend, get_db, require_user
from keygate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keygate.apps.api.response import SuccessEnvelope, get_request_id, success_response
from keygate.core.config import get_settings
from keygate.core.errors import KeygateError, LoginRejected
from keygate.domain.models import TrackedUser
from keygate.persistence.db import ensure_utc
from keygate.services.auth.identity import build_authorize_url, exchange_code, fetch_user_info, generate_state
from keygate.services.auth.sessions import SessionClaims, issue_session_token
from keygate.services.key_backend import KeyBackend
from keygate.services.login import CATEGORY_BANNED, complete_login
from keygate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)

STATE_COOKIE = "oauth_state"
DASHBOARD_PATH = "/dashboard"

ERROR_MISSING_PARAMS = "missing_params"
ERROR_INVALID_STATE = "invalid_state"
ERROR_AUTH_FAILED = "auth_failed"


class UserProfileResponse(BaseModel):
    id: str
    external_id: int
    username: str
    display_name: str | None
    avatar_template: str | None
    trust_level: int
    role: str
    is_banned: bool
    remote_user_id: int | None
    remote_key_id: int | None
    last_login_at: str | None
    created_at: str | None


class LogoutResponse(BaseModel):
    status: str


def _site_url(path: str) -> str:
    return f"{get_settings().site_url.rstrip('/')}{path}"


def _error_redirect(category: str, reason: str | None = None) -> RedirectResponse:
    # Login failures land on the landing page with a stable category code.
    params = {"error": category}
    if reason:
        params["reason"] = reason
    response = RedirectResponse(url=_site_url(f"/?{urlencode(params)}"), status_code=status.HTTP_302_FOUND)
    response.delete_cookie(STATE_COOKIE, path="/")
    return response


def _iso(value: datetime | None) -> str | None:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized else None


def _profile_payload(user: TrackedUser) -> UserProfileResponse:
    return UserProfileResponse(
        id=user.id,
        external_id=user.external_id,
        username=user.username,
        display_name=user.display_name,
        avatar_template=user.avatar_template,
        trust_level=user.trust_level,
        role=user.role,
        is_banned=user.is_banned,
        remote_user_id=user.remote_user_id,
        remote_key_id=user.remote_key_id,
        last_login_at=_iso(user.last_login_at),
        created_at=_iso(user.created_at),
    )


@router.get("/login", status_code=status.HTTP_302_FOUND)
async def login() -> RedirectResponse:
    settings = get_settings()
    state = generate_state()
    response = RedirectResponse(url=build_authorize_url(state), status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=settings.oauth_state_ttl_s,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.get("/callback", status_code=status.HTTP_302_FOUND)
async def callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    backend: KeyBackend = Depends(get_backend),
) -> RedirectResponse:
    if not code or not state:
        return _error_redirect(ERROR_MISSING_PARAMS)
    saved_state = request.cookies.get(STATE_COOKIE)
    if not saved_state or not secrets.compare_digest(saved_state, state):
        return _error_redirect(ERROR_INVALID_STATE)

    try:
        access_token = await exchange_code(code)
        profile = await fetch_user_info(access_token)
        user = await complete_login(db, profile, backend=backend, request_id=get_request_id(request))
    except LoginRejected as exc:
        increment_counter(f"login_rejected_{exc.category}_total")
        logger.info("login_rejected category=%s", exc.category)
        reason = exc.reason if exc.category == CATEGORY_BANNED else None
        return _error_redirect(exc.category, reason)
    except KeygateError as exc:
        logger.warning("login_failed error=%s", type(exc).__name__, exc_info=exc)
        return _error_redirect(ERROR_AUTH_FAILED)
    except Exception as exc:
        # The browser is mid-redirect; it has to land on the site, never on a JSON 500.
        logger.exception("login_failed_unexpected error=%s", type(exc).__name__, exc_info=exc)
        return _error_redirect(ERROR_AUTH_FAILED)

    settings = get_settings()
    token = issue_session_token(
        SessionClaims(
            user_id=user.id,
            external_id=user.external_id,
            username=user.username,
            role=user.role,
        )
    )
    response = RedirectResponse(url=_site_url(DASHBOARD_PATH), status_code=status.HTTP_302_FOUND)
    response.delete_cookie(STATE_COOKIE, path="/")
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.post("/logout", response_model=SuccessEnvelope[LogoutResponse] | LogoutResponse)
async def logout(request: Request) -> JSONResponse:
    response = JSONResponse(
        content=success_response(request=request, data=LogoutResponse(status="logged_out").model_dump())
    )
    response.delete_cookie(get_settings().session_cookie_name, path="/")
    return response


@router.get("/me", response_model=SuccessEnvelope[UserProfileResponse] | UserProfileResponse)
async def me(
    request: Request,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await db.get(TrackedUser, principal.user_id, populate_existing=True)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "USER_NOT_FOUND", "message": "User not found"},
        )
    return success_response(request=request, data=_profile_payload(user))
