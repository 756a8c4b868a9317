from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.config import get_settings
from keygate.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_FIELD_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password", "sealed", "cookie")
# Backend API keys and bearer credentials are recognizable by value as well.
_SENSITIVE_VALUE_PREFIXES = ("sk-", "Bearer ")
_REDACTED = "[REDACTED]"


def _redact_field(name: str) -> bool:
    lowered = name.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FIELD_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` safe to persist in the audit log.

    Dict entries whose key names a credential are replaced wholesale; strings
    that look like a key or bearer token are replaced wherever they appear.
    """
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if _redact_field(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and value.startswith(_SENSITIVE_VALUE_PREFIXES):
        return _REDACTED
    return value


async def record_event(
    *,
    session: AsyncSession,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = True,
) -> None:
    """Write an audit row without letting audit failures break the calling flow.

    The row is added to ``session``; with ``commit`` the session is committed
    immediately, otherwise it rides along with the caller's transaction.
    """
    if not get_settings().audit_enabled:
        return
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_id,
            exc_info=exc,
        )
