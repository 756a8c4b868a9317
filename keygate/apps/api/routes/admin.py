from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
import logging
import math
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.apps.api.deps import get_backend, get_db, require_admin
from keygate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from keygate.apps.api.response import SuccessEnvelope, get_request_id, success_response
from keygate.domain.models import TrackedUser
from keygate.persistence.db import ensure_utc
from keygate.services.audit import record_event
from keygate.services.key_backend import KeyBackend
from keygate.services.key_policy.config_store import (
    MAX_INACTIVITY_HOURS,
    MIN_INACTIVITY_HOURS,
    KeyPolicyConfig,
    KeyPolicyUpdate,
    get_policy_config,
    update_policy_config,
)
from keygate.services.key_policy.schedule import next_reactivation_at
from keygate.services.login import ROLE_ADMIN, ROLE_USER
from keygate.services.telemetry import (
    counters_snapshot,
    external_call_summary,
    increment_counter,
    request_summary,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

USER_STATUS_ACTIVE = "active"
USER_STATUS_BANNED = "banned"


class PolicyResponse(BaseModel):
    inactivityThresholdHours: int
    dailyReactivateHour: int
    dailyReactivateMinute: int
    dailyReactivateLabel: str
    nextReactivationInstant: str


class SettingsResponse(BaseModel):
    policy: PolicyResponse


class SettingsPatchRequest(BaseModel):
    # Strict ints: JSON booleans, strings and floats are rejected, not coerced.
    # Clamping is reserved for stored values.
    model_config = ConfigDict(populate_by_name=True, extra="forbid", strict=True)

    inactivity_hours: int = Field(alias="inactivityHours", ge=MIN_INACTIVITY_HOURS, le=MAX_INACTIVITY_HOURS)
    daily_reactivate_hour: int = Field(alias="dailyReactivateHour", ge=0, le=23)
    daily_reactivate_minute: int = Field(alias="dailyReactivateMinute", ge=0, le=59)


class AdminUserResponse(BaseModel):
    id: str
    external_id: int
    username: str
    display_name: str | None
    avatar_template: str | None
    trust_level: int
    role: str
    is_banned: bool
    ban_reason: str | None
    remote_user_id: int | None
    remote_key_id: int | None
    key_auto_disabled: bool
    auto_disabled_at: str | None
    last_login_at: str | None
    created_at: str | None


class AdminUserList(BaseModel):
    items: list[AdminUserResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class BanRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class BanResponse(BaseModel):
    user_id: str
    is_banned: bool
    ban_reason: str | None


def _iso(value: datetime | None) -> str | None:
    normalized = ensure_utc(value)
    return normalized.isoformat() if normalized else None


def _policy_payload(config: KeyPolicyConfig) -> SettingsResponse:
    return SettingsResponse(
        policy=PolicyResponse(
            inactivityThresholdHours=config.inactivity_hours,
            dailyReactivateHour=config.daily_reactivate_hour,
            dailyReactivateMinute=config.daily_reactivate_minute,
            dailyReactivateLabel=config.daily_reactivate_label,
            nextReactivationInstant=next_reactivation_at(
                datetime.now(timezone.utc),
                config.daily_reactivate_hour,
                config.daily_reactivate_minute,
            ).isoformat(),
        )
    )


def _user_payload(user: TrackedUser) -> AdminUserResponse:
    return AdminUserResponse(
        id=user.id,
        external_id=user.external_id,
        username=user.username,
        display_name=user.display_name,
        avatar_template=user.avatar_template,
        trust_level=user.trust_level,
        role=user.role,
        is_banned=user.is_banned,
        ban_reason=user.ban_reason,
        remote_user_id=user.remote_user_id,
        remote_key_id=user.remote_key_id,
        key_auto_disabled=user.key_auto_disabled,
        auto_disabled_at=_iso(user.auto_disabled_at),
        last_login_at=_iso(user.last_login_at),
        created_at=_iso(user.created_at),
    )


async def _get_user_or_404(db: AsyncSession, user_id: str) -> TrackedUser:
    user = await db.get(TrackedUser, user_id, populate_existing=True)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "USER_NOT_FOUND", "message": "User not found"},
        )
    return user


@router.get("/settings", response_model=SuccessEnvelope[SettingsResponse] | SettingsResponse)
async def get_settings_view(
    request: Request,
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    config = await get_policy_config(db)
    return success_response(request=request, data=_policy_payload(config))


@router.patch("/settings", response_model=SuccessEnvelope[SettingsResponse] | SettingsResponse)
async def patch_settings(
    request: Request,
    payload: SettingsPatchRequest,
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    config = await update_policy_config(
        db,
        KeyPolicyUpdate(
            inactivity_hours=payload.inactivity_hours,
            daily_reactivate_hour=payload.daily_reactivate_hour,
            daily_reactivate_minute=payload.daily_reactivate_minute,
        ),
    )
    logger.info(
        "key_policy_config_updated admin_id=%s inactivity_hours=%s hour=%s minute=%s",
        admin.id,
        config.inactivity_hours,
        config.daily_reactivate_hour,
        config.daily_reactivate_minute,
    )
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin.id,
        event_type="key_policy.config.updated",
        outcome="success",
        resource_type="policy_state",
        resource_id="1",
        request_id=get_request_id(request),
        metadata=asdict(config),
    )
    return success_response(request=request, data=_policy_payload(config))


@router.get("/users", response_model=SuccessEnvelope[AdminUserList] | AdminUserList)
async def list_users(
    request: Request,
    search: str | None = Query(default=None, max_length=100),
    role: str | None = Query(default=None),
    user_status: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    filters = []
    if search:
        pattern = f"%{search}%"
        filters.append(
            or_(TrackedUser.username.ilike(pattern), TrackedUser.display_name.ilike(pattern))
        )
    # Unknown role/status values are ignored rather than rejected.
    if role and role.lower() in {ROLE_ADMIN, ROLE_USER}:
        filters.append(TrackedUser.role == role.lower())
    if user_status == USER_STATUS_BANNED:
        filters.append(TrackedUser.is_banned.is_(True))
    elif user_status == USER_STATUS_ACTIVE:
        filters.append(TrackedUser.is_banned.is_(False))

    total = (
        await db.execute(select(func.count()).select_from(TrackedUser).where(*filters))
    ).scalar_one()
    rows = (
        await db.execute(
            select(TrackedUser)
            .where(*filters)
            .order_by(TrackedUser.created_at.desc(), TrackedUser.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()
    payload = AdminUserList(
        items=[_user_payload(user) for user in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )
    return success_response(request=request, data=payload)


@router.post("/users/{user_id}/ban", response_model=SuccessEnvelope[BanResponse] | BanResponse)
async def ban_user(
    request: Request,
    user_id: str,
    payload: BanRequest,
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    backend: KeyBackend = Depends(get_backend),
) -> dict:
    """Ban a user and disable their backend user and key.

    The backend calls go first; a backend failure leaves the local row
    untouched and surfaces as ``502``.
    """
    user = await _get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "CANNOT_BAN_SELF", "message": "Cannot ban yourself"},
        )
    if user.remote_user_id is not None:
        await backend.set_user_enabled(user.remote_user_id, False)
    if user.remote_key_id is not None:
        await backend.set_key_enabled(user.remote_key_id, False)

    user.is_banned = True
    user.ban_reason = payload.reason
    await db.commit()
    increment_counter("admin_bans_total")
    logger.info("admin_user_banned admin_id=%s user_id=%s", admin.id, user.id)
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin.id,
        event_type="user.banned",
        outcome="success",
        resource_type="user",
        resource_id=user.id,
        request_id=get_request_id(request),
        metadata={"reason": payload.reason},
    )
    return success_response(
        request=request,
        data=BanResponse(user_id=user.id, is_banned=True, ban_reason=user.ban_reason),
    )


@router.delete("/users/{user_id}/ban", response_model=SuccessEnvelope[BanResponse] | BanResponse)
async def unban_user(
    request: Request,
    user_id: str,
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    backend: KeyBackend = Depends(get_backend),
) -> dict:
    user = await _get_user_or_404(db, user_id)
    if user.remote_user_id is not None:
        await backend.set_user_enabled(user.remote_user_id, True)
    if user.remote_key_id is not None:
        await backend.set_key_enabled(user.remote_key_id, True)

    user.is_banned = False
    user.ban_reason = None
    # The key is enabled again, so any earlier auto-disable no longer holds.
    user.key_auto_disabled = False
    user.auto_disabled_at = None
    await db.commit()
    increment_counter("admin_unbans_total")
    logger.info("admin_user_unbanned admin_id=%s user_id=%s", admin.id, user.id)
    await record_event(
        session=db,
        actor_type="admin",
        actor_id=admin.id,
        event_type="user.unbanned",
        outcome="success",
        resource_type="user",
        resource_id=user.id,
        request_id=get_request_id(request),
    )
    return success_response(
        request=request,
        data=BanResponse(user_id=user.id, is_banned=False, ban_reason=None),
    )


@router.get("/stats")
async def get_stats(
    request: Request,
    admin: TrackedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    backend: KeyBackend = Depends(get_backend),
) -> Any:
    overview = await backend.get_overview_stats()
    local_counts = (
        await db.execute(
            select(
                func.count(TrackedUser.id),
                func.count(TrackedUser.id).filter(TrackedUser.is_banned.is_(True)),
                func.count(TrackedUser.id).filter(TrackedUser.key_auto_disabled.is_(True)),
            )
        )
    ).one()
    data = {
        "backend": asdict(overview),
        "local": {
            "tracked_users": local_counts[0],
            "banned_users": local_counts[1],
            "auto_disabled_keys": local_counts[2],
        },
    }
    return success_response(request=request, data=data)


@router.get("/sessions")
async def get_sessions(
    request: Request,
    admin: TrackedUser = Depends(require_admin),
    backend: KeyBackend = Depends(get_backend),
) -> Any:
    sessions = await backend.list_active_sessions()
    return success_response(request=request, data={"items": [asdict(item) for item in sessions]})


@router.get("/metrics")
async def get_metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    admin: TrackedUser = Depends(require_admin),
) -> Any:
    data: dict[str, Any] = {
        "window_s": window_s,
        "requests": request_summary(window_s),
        "key_backend": external_call_summary(window_s),
        "counters": counters_snapshot(),
    }
    return success_response(request=request, data=data)
