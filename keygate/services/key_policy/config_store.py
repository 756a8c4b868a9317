from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.domain.models import POLICY_STATE_ID, PolicyState
from keygate.services.key_policy.schedule import REACTIVATION_TZ_LABEL


logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_HOURS = 5
DEFAULT_REACTIVATE_HOUR = 8
DEFAULT_REACTIVATE_MINUTE = 0

MIN_INACTIVITY_HOURS = 1
MAX_INACTIVITY_HOURS = 168


@dataclass(frozen=True)
class KeyPolicyConfig:
    inactivity_hours: int
    daily_reactivate_hour: int
    daily_reactivate_minute: int

    @property
    def daily_reactivate_label(self) -> str:
        return (
            f"daily at {self.daily_reactivate_hour:02d}:{self.daily_reactivate_minute:02d}"
            f" ({REACTIVATION_TZ_LABEL})"
        )


@dataclass(frozen=True)
class KeyPolicyUpdate:
    inactivity_hours: Any
    daily_reactivate_hour: Any
    daily_reactivate_minute: Any


def clamp_int(value: Any, minimum: int, maximum: int) -> int:
    """Coerce ``value`` into ``[minimum, maximum]``.

    Fractions truncate toward zero; anything that is not a finite number
    resolves to ``minimum``.
    """
    if isinstance(value, bool) or value is None:
        return minimum
    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return min(maximum, max(minimum, math.trunc(number)))


def normalize_policy(raw: KeyPolicyUpdate | PolicyState) -> KeyPolicyConfig:
    return KeyPolicyConfig(
        inactivity_hours=clamp_int(raw.inactivity_hours, MIN_INACTIVITY_HOURS, MAX_INACTIVITY_HOURS),
        daily_reactivate_hour=clamp_int(raw.daily_reactivate_hour, 0, 23),
        daily_reactivate_minute=clamp_int(raw.daily_reactivate_minute, 0, 59),
    )


async def get_or_create_policy_state(session: AsyncSession) -> PolicyState:
    # Lazily create the singleton row; a concurrent creator wins and we re-read theirs.
    state = await session.get(PolicyState, POLICY_STATE_ID, populate_existing=True)
    if state is not None:
        return state
    state = PolicyState(
        id=POLICY_STATE_ID,
        inactivity_hours=DEFAULT_INACTIVITY_HOURS,
        daily_reactivate_hour=DEFAULT_REACTIVATE_HOUR,
        daily_reactivate_minute=DEFAULT_REACTIVATE_MINUTE,
        last_sweep_at=None,
    )
    session.add(state)
    try:
        await session.commit()
        return state
    except IntegrityError:
        await session.rollback()
        result = await session.execute(select(PolicyState).where(PolicyState.id == POLICY_STATE_ID))
        return result.scalar_one()


async def get_policy_config(session: AsyncSession) -> KeyPolicyConfig:
    state = await get_or_create_policy_state(session)
    normalized = normalize_policy(state)
    if (
        normalized.inactivity_hours != state.inactivity_hours
        or normalized.daily_reactivate_hour != state.daily_reactivate_hour
        or normalized.daily_reactivate_minute != state.daily_reactivate_minute
    ):
        # Self-heal out-of-range rows instead of surfacing an error.
        logger.warning(
            "key_policy_config_clamped inactivity_hours=%s hour=%s minute=%s",
            state.inactivity_hours,
            state.daily_reactivate_hour,
            state.daily_reactivate_minute,
        )
        state.inactivity_hours = normalized.inactivity_hours
        state.daily_reactivate_hour = normalized.daily_reactivate_hour
        state.daily_reactivate_minute = normalized.daily_reactivate_minute
        await session.commit()
    return normalized


async def update_policy_config(session: AsyncSession, update: KeyPolicyUpdate) -> KeyPolicyConfig:
    # Last write wins; the sweep bookkeeping is left untouched.
    normalized = normalize_policy(update)
    state = await get_or_create_policy_state(session)
    state.inactivity_hours = normalized.inactivity_hours
    state.daily_reactivate_hour = normalized.daily_reactivate_hour
    state.daily_reactivate_minute = normalized.daily_reactivate_minute
    await session.commit()
    return normalized
