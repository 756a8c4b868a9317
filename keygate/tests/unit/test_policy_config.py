from __future__ import annotations

from datetime import datetime, timezone

import pytest

from keygate.domain.models import POLICY_STATE_ID, PolicyState
from keygate.persistence.db import ensure_utc
from keygate.services.key_policy.config_store import (
    KeyPolicyConfig,
    KeyPolicyUpdate,
    clamp_int,
    get_policy_config,
    update_policy_config,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        (5, 5),
        (0, 1),
        (500, 168),
        (7.9, 7),
        ("12", 12),
        ("abc", 1),
        (None, 1),
        (float("nan"), 1),
        (float("inf"), 1),
        (True, 1),
    ],
)
def test_clamp_int(value: object, expected: int) -> None:
    assert clamp_int(value, 1, 168) == expected


def test_reactivation_label() -> None:
    config = KeyPolicyConfig(inactivity_hours=5, daily_reactivate_hour=8, daily_reactivate_minute=5)
    assert config.daily_reactivate_label == "daily at 08:05 (UTC+08:00)"


async def test_first_read_creates_defaults(session) -> None:
    config = await get_policy_config(session)
    assert config == KeyPolicyConfig(inactivity_hours=5, daily_reactivate_hour=8, daily_reactivate_minute=0)
    state = await session.get(PolicyState, POLICY_STATE_ID)
    assert state is not None
    assert state.last_sweep_at is None


async def test_out_of_range_row_is_corrected_and_persisted(session) -> None:
    session.add(
        PolicyState(
            id=POLICY_STATE_ID,
            inactivity_hours=0,
            daily_reactivate_hour=30,
            daily_reactivate_minute=-4,
        )
    )
    await session.commit()

    config = await get_policy_config(session)
    assert config == KeyPolicyConfig(inactivity_hours=1, daily_reactivate_hour=23, daily_reactivate_minute=0)

    state = await session.get(PolicyState, POLICY_STATE_ID, populate_existing=True)
    assert (state.inactivity_hours, state.daily_reactivate_hour, state.daily_reactivate_minute) == (1, 23, 0)


async def test_update_clamps_and_is_idempotent(session) -> None:
    update = KeyPolicyUpdate(inactivity_hours=200, daily_reactivate_hour=6, daily_reactivate_minute=15)
    first = await update_policy_config(session, update)
    second = await update_policy_config(session, update)
    assert first == second == KeyPolicyConfig(
        inactivity_hours=168, daily_reactivate_hour=6, daily_reactivate_minute=15
    )
    assert await get_policy_config(session) == first


async def test_update_leaves_sweep_bookkeeping_alone(session) -> None:
    swept_at = datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)
    session.add(
        PolicyState(
            id=POLICY_STATE_ID,
            inactivity_hours=5,
            daily_reactivate_hour=8,
            daily_reactivate_minute=0,
            last_sweep_at=swept_at,
        )
    )
    await session.commit()

    await update_policy_config(
        session, KeyPolicyUpdate(inactivity_hours=10, daily_reactivate_hour=9, daily_reactivate_minute=0)
    )
    state = await session.get(PolicyState, POLICY_STATE_ID, populate_existing=True)
    assert ensure_utc(state.last_sweep_at) == swept_at
