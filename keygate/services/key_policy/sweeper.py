from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.errors import KeyBackendError
from keygate.domain.models import POLICY_STATE_ID, PolicyState, TrackedUser
from keygate.persistence.db import ensure_utc
from keygate.services.audit import record_event
from keygate.services.key_backend import KeyBackend
from keygate.services.key_policy.config_store import (
    KeyPolicyConfig,
    get_or_create_policy_state,
    get_policy_config,
)
from keygate.services.key_policy.schedule import latest_reactivation_boundary
from keygate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    # Summarize one sweep attempt; ran=False means the window was already done.
    ran: bool
    boundary: datetime
    attempted: int = 0
    reactivated: int = 0
    failed: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _reactivate_key(backend: KeyBackend, user_id: str, key_id: int) -> bool:
    try:
        await backend.set_key_enabled(key_id, True)
    except KeyBackendError as exc:
        logger.warning(
            "key_policy_sweep_reactivate_failed user_id=%s key_id=%s",
            user_id,
            key_id,
            exc_info=exc,
        )
        return False
    return True


async def ensure_daily_key_reactivation(
    session: AsyncSession,
    *,
    backend: KeyBackend,
    now: datetime | None = None,
    config: KeyPolicyConfig | None = None,
) -> SweepResult:
    """Re-enable every eligible key once per reactivation window.

    The window is identified by its boundary instant. The sweep runs when
    ``last_sweep_at`` is unset or older than the latest boundary, so any
    number of missed windows collapse into a single catch-up run. Individual
    backend failures are logged and skipped; the window is still marked done
    once the whole batch has been attempted.
    """
    now = ensure_utc(now) or _utc_now()
    config = config or await get_policy_config(session)
    boundary = latest_reactivation_boundary(
        now, config.daily_reactivate_hour, config.daily_reactivate_minute
    )

    state = await get_or_create_policy_state(session)
    last_sweep_at = ensure_utc(state.last_sweep_at)
    if last_sweep_at is not None and last_sweep_at >= boundary:
        return SweepResult(ran=False, boundary=boundary)

    rows = (
        await session.execute(
            select(TrackedUser.id, TrackedUser.remote_key_id).where(
                TrackedUser.is_banned.is_(False),
                TrackedUser.remote_key_id.is_not(None),
            )
        )
    ).all()

    # Let every call settle before surfacing a fatal error; the window stays open.
    outcomes = await asyncio.gather(
        *(_reactivate_key(backend, user_id, key_id) for user_id, key_id in rows),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    success_ids = [row[0] for row, ok in zip(rows, outcomes) if ok]

    if success_ids:
        await session.execute(
            update(TrackedUser)
            .where(
                TrackedUser.id.in_(success_ids),
                TrackedUser.key_auto_disabled.is_(True),
            )
            .values(key_auto_disabled=False, auto_disabled_at=None)
            .execution_options(synchronize_session=False)
        )

    # Conditional write keeps last_sweep_at monotonic across concurrent sweepers.
    await session.execute(
        update(PolicyState)
        .where(
            PolicyState.id == POLICY_STATE_ID,
            or_(PolicyState.last_sweep_at.is_(None), PolicyState.last_sweep_at < boundary),
        )
        .values(last_sweep_at=boundary)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    failed = len(rows) - len(success_ids)
    increment_counter("key_policy_sweeps_total")
    if failed:
        increment_counter("key_policy_sweep_failures_total", failed)
    logger.info(
        "key_policy_sweep_completed boundary=%s attempted=%s reactivated=%s failed=%s",
        boundary.isoformat(),
        len(rows),
        len(success_ids),
        failed,
    )
    await record_event(
        session=session,
        actor_type="system",
        actor_id="key_policy",
        event_type="key_policy.sweep.completed",
        outcome="success" if not failed else "partial",
        resource_type="policy_state",
        resource_id=str(POLICY_STATE_ID),
        metadata={
            "boundary": boundary.isoformat(),
            "attempted": len(rows),
            "reactivated": len(success_ids),
            "failed": failed,
        },
    )
    return SweepResult(
        ran=True,
        boundary=boundary,
        attempted=len(rows),
        reactivated=len(success_ids),
        failed=failed,
    )
