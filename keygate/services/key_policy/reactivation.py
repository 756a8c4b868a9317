from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.errors import KeyBackendError, KeyReactivationError
from keygate.domain.models import TrackedUser
from keygate.services.audit import record_event
from keygate.services.key_backend import KeyBackend
from keygate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def reactivate_user_key_on_login(
    session: AsyncSession,
    user: TrackedUser,
    *,
    backend: KeyBackend,
) -> float:
    """Re-enable an auto-disabled key at sign-in and return the current usage.

    The returned counter lets the caller re-baseline ``last_known_usage`` so
    the evaluator does not read the login itself as a stale gap. A failed
    enable raises :class:`KeyReactivationError`; a failed usage read only
    falls back to the stored counter.
    """
    used = user.last_known_usage or 0.0
    if user.remote_key_id is None:
        return used

    if user.key_auto_disabled:
        try:
            await backend.set_key_enabled(user.remote_key_id, True)
        except KeyBackendError as exc:
            increment_counter("key_policy_login_reactivation_failures_total")
            logger.warning(
                "key_policy_login_reactivate_failed user_id=%s key_id=%s",
                user.id,
                user.remote_key_id,
                exc_info=exc,
            )
            raise KeyReactivationError(str(exc), status_code=exc.status_code) from exc

        user.key_auto_disabled = False
        user.auto_disabled_at = None
        await session.commit()
        increment_counter("key_policy_login_reactivations_total")
        logger.info("key_policy_login_reactivated user_id=%s key_id=%s", user.id, user.remote_key_id)
        await record_event(
            session=session,
            actor_type="user",
            actor_id=user.id,
            event_type="key.reactivated_on_login",
            outcome="success",
            resource_type="user",
            resource_id=user.id,
            metadata={"remote_key_id": user.remote_key_id},
        )

    try:
        usage = await backend.get_key_usage(user.remote_key_id)
    except KeyBackendError as exc:
        logger.warning(
            "key_policy_login_usage_unavailable user_id=%s key_id=%s",
            user.id,
            user.remote_key_id,
            exc_info=exc,
        )
        return used
    return usage.used
