from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from keygate.core.errors import TrackedUserNotFound
from keygate.domain.models import POLICY_STATE_ID, AuditEvent, PolicyState, TrackedUser
from keygate.persistence.db import SessionLocal, ensure_utc
from keygate.services.key_policy.config_store import get_policy_config
from keygate.services.key_policy.evaluator import (
    evaluate_user_key_policy,
    resolve_effective_last_activity,
)
from keygate.services.telemetry import counters_snapshot
from keygate.tests.utils.backend import FakeKeyBackend
from keygate.tests.utils.users import seed_user


NOW = datetime(2026, 3, 10, 0, 5, tzinfo=timezone.utc)
BOUNDARY = datetime(2026, 3, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
async def sweep_already_done(session) -> None:
    # Keep the daily sweep out of the way so only evaluator effects are observed.
    await get_policy_config(session)
    state = await session.get(PolicyState, POLICY_STATE_ID)
    state.last_sweep_at = BOUNDARY
    await session.commit()


async def _reload(session, user_id: str) -> TrackedUser:
    return await session.get(TrackedUser, user_id, populate_existing=True)


def test_effective_last_activity_prefers_activity_then_login_then_creation() -> None:
    created = datetime(2026, 1, 1, tzinfo=timezone.utc)
    login = datetime(2026, 1, 2, tzinfo=timezone.utc)
    activity = datetime(2026, 1, 3, tzinfo=timezone.utc)
    assert resolve_effective_last_activity(
        last_activity_at=activity, last_login_at=login, created_at=created
    ) == activity
    assert resolve_effective_last_activity(
        last_activity_at=None, last_login_at=login, created_at=created
    ) == login
    assert resolve_effective_last_activity(
        last_activity_at=None, last_login_at=None, created_at=created
    ) == created


async def test_inactive_user_is_auto_disabled(session, backend) -> None:
    user = await seed_user(session, remote_key_id=501, created_at=NOW - timedelta(hours=5, minutes=1))

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "disabled"
    assert state.auto_disabled_at == NOW
    assert backend.calls_to("set_key_enabled") == [(501, False)]
    stored = await _reload(session, user.id)
    assert stored.key_auto_disabled is True
    assert ensure_utc(stored.auto_disabled_at) == NOW

    audit = (
        await session.execute(select(AuditEvent).where(AuditEvent.event_type == "key.auto_disabled"))
    ).scalar_one()
    assert audit.resource_id == user.id


async def test_threshold_is_inclusive(session, backend) -> None:
    at_threshold = await seed_user(session, remote_key_id=501, created_at=NOW - timedelta(hours=5))
    just_under = await seed_user(
        session, remote_key_id=502, created_at=NOW - timedelta(hours=5) + timedelta(microseconds=1)
    )

    disabled = await evaluate_user_key_policy(session, at_threshold.id, backend=backend, now=NOW)
    active = await evaluate_user_key_policy(session, just_under.id, backend=backend, now=NOW)

    assert disabled.key_status == "disabled"
    assert active.key_status == "active"
    assert backend.calls_to("set_key_enabled") == [(501, False)]


async def test_usage_increase_counts_as_activity(session, backend) -> None:
    user = await seed_user(
        session,
        remote_key_id=501,
        created_at=NOW - timedelta(days=3),
        last_activity_at=NOW - timedelta(days=2),
        last_known_usage=3.0,
    )
    backend.usage[501] = 5.5

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "active"
    assert state.effective_last_activity == NOW
    assert backend.calls_to("set_key_enabled") == []
    stored = await _reload(session, user.id)
    assert stored.last_known_usage == 5.5
    assert ensure_utc(stored.last_activity_at) == NOW


async def test_usage_reset_resyncs_counter_without_activity(session, backend) -> None:
    recent = NOW - timedelta(hours=1)
    user = await seed_user(
        session, remote_key_id=501, last_activity_at=recent, last_known_usage=10.0
    )
    backend.usage[501] = 2.0

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "active"
    stored = await _reload(session, user.id)
    assert stored.last_known_usage == 2.0
    assert ensure_utc(stored.last_activity_at) == recent


async def test_usage_failure_skips_threshold_this_cycle(session, backend) -> None:
    user = await seed_user(session, remote_key_id=501, created_at=NOW - timedelta(days=10))
    backend.fail_usage.add(501)

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.usage is None
    assert state.key_status == "active"
    assert backend.calls_to("set_key_enabled") == []
    assert (await _reload(session, user.id)).key_auto_disabled is False


async def test_banned_user_is_never_auto_disabled(session, backend) -> None:
    user = await seed_user(
        session, remote_key_id=501, is_banned=True, created_at=NOW - timedelta(days=10)
    )

    await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert backend.calls_to("set_key_enabled") == []
    assert (await _reload(session, user.id)).key_auto_disabled is False


async def test_user_without_key_skips_usage(session, backend) -> None:
    user = await seed_user(session, remote_key_id=None, created_at=NOW - timedelta(days=10))

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.usage is None
    assert state.key_status == "active"
    assert backend.calls == []


async def test_already_disabled_user_is_left_alone(session, backend) -> None:
    disabled_at = NOW - timedelta(hours=2)
    user = await seed_user(
        session,
        remote_key_id=501,
        created_at=NOW - timedelta(days=10),
        key_auto_disabled=True,
        auto_disabled_at=disabled_at,
    )

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "disabled"
    assert state.auto_disabled_at == disabled_at
    assert backend.calls_to("set_key_enabled") == []


async def test_disable_failure_keeps_key_active(session, backend) -> None:
    user = await seed_user(session, remote_key_id=501, created_at=NOW - timedelta(days=1))
    backend.fail_disable.add(501)

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "active"
    assert state.auto_disabled_at is None
    assert (await _reload(session, user.id)).key_auto_disabled is False


async def test_recent_login_keeps_key_active(session, backend) -> None:
    user = await seed_user(
        session,
        remote_key_id=501,
        created_at=NOW - timedelta(days=30),
        last_login_at=NOW - timedelta(hours=1),
    )

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert state.key_status == "active"
    assert state.effective_last_activity == NOW - timedelta(hours=1)


async def test_unknown_user_raises(session, backend) -> None:
    with pytest.raises(TrackedUserNotFound):
        await evaluate_user_key_policy(session, "missing", backend=backend, now=NOW)


async def test_projection_shape(session, backend) -> None:
    user = await seed_user(session, remote_key_id=501, last_activity_at=NOW - timedelta(minutes=30))
    backend.usage[501] = 0.0

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)
    projection = state.as_projection()

    assert projection["keyStatus"] == "active"
    assert projection["autoDisabledAt"] is None
    assert projection["usage"] == {"used": 0.0, "limit": 100.0, "remaining": 100.0}
    assert projection["policy"] == {
        "inactivityThresholdHours": 5,
        "dailyReactivateHour": 8,
        "dailyReactivateMinute": 0,
        "dailyReactivateLabel": "daily at 08:00 (UTC+08:00)",
        "nextReactivationInstant": "2026-03-11T00:00:00+00:00",
    }


async def test_evaluation_catches_up_missed_sweep(session, backend) -> None:
    state = await session.get(PolicyState, POLICY_STATE_ID)
    state.last_sweep_at = BOUNDARY - timedelta(days=1)
    await session.commit()
    user = await seed_user(
        session,
        remote_key_id=501,
        last_activity_at=NOW - timedelta(minutes=5),
        key_auto_disabled=True,
        auto_disabled_at=NOW - timedelta(hours=20),
    )

    result = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert result.key_status == "active"
    assert backend.calls_to("set_key_enabled") == [(501, True)]


class _BanDuringDisableBackend(FakeKeyBackend):
    # Bans the owner from another session while the disable call is in flight.
    def __init__(self, user_id: str) -> None:
        super().__init__()
        self.user_id = user_id

    async def set_key_enabled(self, key_id: int, enabled: bool) -> None:
        async with SessionLocal() as other:
            user = await other.get(TrackedUser, self.user_id)
            user.is_banned = True
            user.ban_reason = "abuse"
            await other.commit()
        await super().set_key_enabled(key_id, enabled)


async def test_ban_during_disable_is_not_recorded_as_auto_disable(session) -> None:
    user = await seed_user(session, remote_key_id=501, created_at=NOW - timedelta(days=1))
    backend = _BanDuringDisableBackend(user.id)

    state = await evaluate_user_key_policy(session, user.id, backend=backend, now=NOW)

    assert backend.calls_to("set_key_enabled") == [(501, False)]
    assert state.key_status == "active"
    assert state.auto_disabled_at is None
    stored = await _reload(session, user.id)
    assert stored.is_banned is True
    assert stored.key_auto_disabled is False
    assert "key_policy_auto_disabled_total" not in counters_snapshot()
    audits = (
        await session.execute(select(AuditEvent).where(AuditEvent.event_type == "key.auto_disabled"))
    ).scalars().all()
    assert audits == []
