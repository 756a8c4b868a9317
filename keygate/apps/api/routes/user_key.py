from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.apps.api.deps import Principal, get_backend, get_db, require_user
from keygate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keygate.apps.api.response import error_response, success_response
from keygate.core.config import get_settings
from keygate.core.errors import TrackedUserNotFound
from keygate.domain.models import TrackedUser
from keygate.services.crypto import open_secret
from keygate.services.key_backend import KeyBackend
from keygate.services.key_policy.evaluator import evaluate_user_key_policy
from keygate.services.login import DEFAULT_BAN_REASON


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/user", tags=["user"], responses=DEFAULT_ERROR_RESPONSES)


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "USER_NOT_FOUND", "message": "User not found"},
    )


def _open_key(user: TrackedUser) -> str | None:
    if not user.remote_api_key_sealed:
        return None
    try:
        return open_secret(user.remote_api_key_sealed)
    except ValueError:
        # Undecryptable material (rotated secret) is shown as absent, never as an error.
        logger.warning("user_key_unseal_failed user_id=%s", user.id)
        return None


@router.get("/key")
async def get_user_key(
    request: Request,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    backend: KeyBackend = Depends(get_backend),
) -> Any:
    """Return the caller's key and its current policy state.

    Evaluating the policy here is what drives auto-disable and the daily
    reactivation catch-up for users who only ever visit the dashboard.
    """
    user = await db.get(TrackedUser, principal.user_id, populate_existing=True)
    if user is None:
        raise _not_found()
    if user.is_banned:
        payload = error_response(
            request=request,
            code="ACCOUNT_BANNED",
            message="Account banned",
            details={"reason": user.ban_reason or DEFAULT_BAN_REASON},
        )
        response = JSONResponse(content=payload, status_code=status.HTTP_403_FORBIDDEN)
        response.delete_cookie(get_settings().session_cookie_name, path="/")
        return response

    try:
        state = await evaluate_user_key_policy(db, user.id, backend=backend)
    except TrackedUserNotFound:
        raise _not_found()

    api_key = _open_key(user)
    projection = state.as_projection()
    data = {
        "apiKey": (
            {
                "key": api_key,
                "keyId": user.remote_key_id,
                "userId": user.remote_user_id,
                "status": projection["keyStatus"],
                "autoDisabledAt": projection["autoDisabledAt"],
            }
            if api_key
            else None
        ),
        "backendBaseUrl": get_settings().key_backend_url or "",
        **projection,
    }
    return success_response(request=request, data=data)
