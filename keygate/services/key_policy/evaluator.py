from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.errors import KeyBackendError, TrackedUserNotFound
from keygate.domain.models import TrackedUser
from keygate.persistence.db import ensure_utc
from keygate.services.audit import record_event
from keygate.services.key_backend import KeyBackend, KeyUsage
from keygate.services.key_policy.config_store import KeyPolicyConfig, get_policy_config
from keygate.services.key_policy.schedule import next_reactivation_at
from keygate.services.key_policy.sweeper import ensure_daily_key_reactivation
from keygate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

KEY_STATUS_ACTIVE = "active"
KEY_STATUS_DISABLED = "disabled"


@dataclass(frozen=True)
class UserPolicyState:
    usage: KeyUsage | None
    key_status: str
    auto_disabled_at: datetime | None
    effective_last_activity: datetime
    next_reactivation_at: datetime
    policy: KeyPolicyConfig

    def as_projection(self) -> dict[str, Any]:
        # Public policy-state contract returned to dashboards.
        return {
            "usage": self.usage.as_dict() if self.usage else None,
            "keyStatus": self.key_status,
            "autoDisabledAt": self.auto_disabled_at.isoformat() if self.auto_disabled_at else None,
            "effectiveLastActivity": self.effective_last_activity.isoformat(),
            "policy": {
                "inactivityThresholdHours": self.policy.inactivity_hours,
                "dailyReactivateHour": self.policy.daily_reactivate_hour,
                "dailyReactivateMinute": self.policy.daily_reactivate_minute,
                "dailyReactivateLabel": self.policy.daily_reactivate_label,
                "nextReactivationInstant": self.next_reactivation_at.isoformat(),
            },
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_effective_last_activity(
    *,
    last_activity_at: datetime | None,
    last_login_at: datetime | None,
    created_at: datetime,
) -> datetime:
    """Pick the first known timestamp: last activity, then last login, then creation."""
    for candidate in (last_activity_at, last_login_at, created_at):
        if candidate is not None:
            return ensure_utc(candidate)
    raise ValueError("created_at is required to resolve activity")


def is_inactive(effective_last_activity: datetime, now: datetime, inactivity_hours: int) -> bool:
    # The threshold is inclusive: exactly H hours of silence already counts.
    return now - effective_last_activity >= timedelta(hours=inactivity_hours)


async def _observe_usage(session: AsyncSession, user: TrackedUser, usage: KeyUsage, now: datetime) -> None:
    # Only a strictly increasing counter is activity; a reset just resyncs the counter.
    last_known = user.last_known_usage or 0
    if usage.used > last_known:
        user.last_known_usage = usage.used
        user.last_activity_at = now
        await session.commit()
    elif usage.used != last_known:
        user.last_known_usage = usage.used
        await session.commit()


async def _auto_disable(
    session: AsyncSession,
    user: TrackedUser,
    *,
    backend: KeyBackend,
    now: datetime,
    effective_last_activity: datetime,
) -> None:
    # Re-read the flags right before the backend call to skip work another request already did.
    await session.refresh(user, attribute_names=["key_auto_disabled", "is_banned", "auto_disabled_at"])
    if user.key_auto_disabled or user.is_banned or user.remote_key_id is None:
        return
    try:
        await backend.set_key_enabled(user.remote_key_id, False)
    except KeyBackendError as exc:
        logger.warning(
            "key_policy_auto_disable_failed user_id=%s key_id=%s",
            user.id,
            user.remote_key_id,
            exc_info=exc,
        )
        return

    result = await session.execute(
        update(TrackedUser)
        .where(
            TrackedUser.id == user.id,
            TrackedUser.key_auto_disabled.is_(False),
            TrackedUser.is_banned.is_(False),
        )
        .values(key_auto_disabled=True, auto_disabled_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(user)
    if result.rowcount != 1:
        # A ban or another evaluation changed the row while the backend call was in flight.
        logger.info(
            "key_policy_auto_disable_superseded user_id=%s key_id=%s banned=%s auto_disabled=%s",
            user.id,
            user.remote_key_id,
            user.is_banned,
            user.key_auto_disabled,
        )
        return

    increment_counter("key_policy_auto_disabled_total")
    logger.info("key_policy_auto_disabled user_id=%s key_id=%s", user.id, user.remote_key_id)
    await record_event(
        session=session,
        actor_type="system",
        actor_id="key_policy",
        event_type="key.auto_disabled",
        outcome="success",
        resource_type="user",
        resource_id=user.id,
        metadata={
            "remote_key_id": user.remote_key_id,
            "effective_last_activity": effective_last_activity.isoformat(),
        },
    )


async def evaluate_user_key_policy(
    session: AsyncSession,
    user_id: str,
    *,
    backend: KeyBackend,
    now: datetime | None = None,
) -> UserPolicyState:
    """Bring one user's key status up to date and return the policy projection.

    The daily sweep is caught up first so the user is never judged against a
    stale window. Usage that cannot be read is treated as unchanged and the
    inactivity threshold is not evaluated in that cycle.
    """
    now = ensure_utc(now) or _utc_now()
    config = await get_policy_config(session)
    await ensure_daily_key_reactivation(session, backend=backend, now=now, config=config)

    user = await session.get(TrackedUser, user_id, populate_existing=True)
    if user is None:
        raise TrackedUserNotFound(user_id)

    usage: KeyUsage | None = None
    if user.remote_key_id is not None:
        try:
            usage = await backend.get_key_usage(user.remote_key_id)
        except KeyBackendError as exc:
            logger.warning(
                "key_policy_usage_unavailable user_id=%s key_id=%s",
                user.id,
                user.remote_key_id,
                exc_info=exc,
            )
        else:
            await _observe_usage(session, user, usage, now)

    effective_last_activity = resolve_effective_last_activity(
        last_activity_at=user.last_activity_at,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )

    if (
        usage is not None
        and not user.key_auto_disabled
        and not user.is_banned
        and is_inactive(effective_last_activity, now, config.inactivity_hours)
    ):
        await _auto_disable(
            session,
            user,
            backend=backend,
            now=now,
            effective_last_activity=effective_last_activity,
        )

    return UserPolicyState(
        usage=usage,
        key_status=KEY_STATUS_DISABLED if user.key_auto_disabled else KEY_STATUS_ACTIVE,
        auto_disabled_at=ensure_utc(user.auto_disabled_at),
        effective_last_activity=effective_last_activity,
        next_reactivation_at=next_reactivation_at(
            now, config.daily_reactivate_hour, config.daily_reactivate_minute
        ),
        policy=config,
    )
