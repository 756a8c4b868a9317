from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.config import get_settings
from keygate.core.errors import KeyBackendError, KeyReactivationError, LoginRejected
from keygate.domain.models import TrackedUser
from keygate.persistence.db import ensure_utc
from keygate.services.audit import record_event
from keygate.services.auth.identity import IdentityProfile
from keygate.services.crypto import seal_secret
from keygate.services.key_backend import KeyBackend
from keygate.services.key_policy.reactivation import reactivate_user_key_on_login
from keygate.services.key_policy.sweeper import ensure_daily_key_reactivation
from keygate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ADMIN = "admin"

DEFAULT_BAN_REASON = "account banned"

CATEGORY_TRUST_LEVEL = "trust_level_too_low"
CATEGORY_RESTRICTED = "account_restricted"
CATEGORY_BANNED = "banned"
CATEGORY_PROVISIONING = "provisioning_failed"
CATEGORY_REACTIVATION = "reactivation_failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_initial_admin(profile: IdentityProfile) -> bool:
    initial_admin = get_settings().initial_admin_external_id
    return bool(initial_admin) and str(profile.external_id) == str(initial_admin).strip()


def _apply_profile(user: TrackedUser, profile: IdentityProfile) -> None:
    user.username = profile.username
    user.display_name = profile.name
    user.avatar_template = profile.avatar_template
    user.trust_level = profile.trust_level


async def _find_by_external_id(session: AsyncSession, external_id: int) -> TrackedUser | None:
    result = await session.execute(
        select(TrackedUser)
        .where(TrackedUser.external_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _login_returning_user(
    session: AsyncSession,
    user: TrackedUser,
    profile: IdentityProfile,
    *,
    backend: KeyBackend,
    now: datetime,
) -> TrackedUser:
    if user.is_banned:
        raise LoginRejected(CATEGORY_BANNED, user.ban_reason or DEFAULT_BAN_REASON)
    try:
        used = await reactivate_user_key_on_login(session, user, backend=backend)
    except KeyReactivationError as exc:
        raise LoginRejected(CATEGORY_REACTIVATION, str(exc)) from exc

    _apply_profile(user, profile)
    # A login counts as activity and re-baselines the usage counter.
    user.last_login_at = now
    user.last_activity_at = now
    user.last_known_usage = used
    if _is_initial_admin(profile):
        user.role = ROLE_ADMIN
    await session.commit()
    return user


async def _provision_new_user(
    session: AsyncSession,
    profile: IdentityProfile,
    *,
    backend: KeyBackend,
    now: datetime,
) -> TrackedUser:
    try:
        provisioned = await backend.add_user(profile.username)
    except KeyBackendError as exc:
        increment_counter("login_provisioning_failures_total")
        logger.warning("login_provisioning_failed external_id=%s", profile.external_id, exc_info=exc)
        raise LoginRejected(CATEGORY_PROVISIONING, str(exc)) from exc

    user = TrackedUser(
        id=uuid4().hex,
        external_id=profile.external_id,
        role=ROLE_ADMIN if _is_initial_admin(profile) else ROLE_USER,
        is_banned=False,
        remote_user_id=provisioned.user.id,
        remote_key_id=provisioned.key.id,
        remote_api_key_sealed=seal_secret(provisioned.key.key),
        created_at=now,
        last_login_at=now,
        last_activity_at=now,
        last_known_usage=0.0,
        key_auto_disabled=False,
        auto_disabled_at=None,
    )
    _apply_profile(user, profile)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent callback created the row first; keep theirs.
        await session.rollback()
        logger.warning(
            "login_duplicate_provisioning external_id=%s remote_user_id=%s",
            profile.external_id,
            provisioned.user.id,
        )
        existing = await _find_by_external_id(session, profile.external_id)
        if existing is None:
            raise LoginRejected(CATEGORY_PROVISIONING, "user row could not be created")
        return existing
    increment_counter("login_provisioned_users_total")
    logger.info(
        "login_user_provisioned user_id=%s remote_user_id=%s remote_key_id=%s",
        user.id,
        user.remote_user_id,
        user.remote_key_id,
    )
    return user


async def complete_login(
    session: AsyncSession,
    profile: IdentityProfile,
    *,
    backend: KeyBackend,
    now: datetime | None = None,
    request_id: str | None = None,
) -> TrackedUser:
    """Resolve the tracked user for a verified identity-provider profile.

    Runs the reactivation sweep catch-up, applies the admission rules and
    either refreshes the returning user (re-enabling an auto-disabled key) or
    provisions a backend user and key for a first login. Refusals raise
    :class:`LoginRejected` with a callback error category.
    """
    now = ensure_utc(now) or _utc_now()
    await ensure_daily_key_reactivation(session, backend=backend, now=now)

    if profile.trust_level < get_settings().oauth_min_trust_level:
        raise LoginRejected(CATEGORY_TRUST_LEVEL)
    if profile.silenced or not profile.active:
        raise LoginRejected(CATEGORY_RESTRICTED)

    existing = await _find_by_external_id(session, profile.external_id)
    if existing is not None:
        user = await _login_returning_user(session, existing, profile, backend=backend, now=now)
        created = False
    else:
        user = await _provision_new_user(session, profile, backend=backend, now=now)
        created = True

    increment_counter("logins_total")
    await record_event(
        session=session,
        actor_type="user",
        actor_id=user.id,
        event_type="auth.login",
        outcome="success",
        resource_type="user",
        resource_id=user.id,
        request_id=request_id,
        metadata={"external_id": user.external_id, "created": created, "role": user.role},
    )
    return user
