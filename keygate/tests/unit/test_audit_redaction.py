from __future__ import annotations

from sqlalchemy import select

from keygate.core.config import get_settings
from keygate.domain.models import AuditEvent
from keygate.services.audit import record_event, sanitize_metadata


def test_audit_redacts_keys_and_secrets() -> None:
    payload = {
        "api_key": "sk-live",
        "access_token": "at",
        "remote_api_key_sealed": "v1:abc",
        "nested": {"authorization": "Bearer abc", "items": [{"password": "x", "ok": 1}]},
        "remote_key_id": 501,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["remote_api_key_sealed"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["items"] == [{"password": "[REDACTED]", "ok": 1}]
    assert sanitized["remote_key_id"] == 501


async def test_record_event_persists_sanitized_row(session) -> None:
    await record_event(
        session=session,
        actor_type="system",
        actor_id="key_policy",
        event_type="key.auto_disabled",
        outcome="success",
        metadata={"token": "secret", "remote_key_id": 1},
    )
    event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.metadata_json == {"token": "[REDACTED]", "remote_key_id": 1}


async def test_record_event_respects_disable_flag(session, monkeypatch) -> None:
    monkeypatch.setenv("AUDIT_ENABLED", "false")
    get_settings.cache_clear()
    await record_event(
        session=session,
        actor_type="system",
        actor_id=None,
        event_type="key.auto_disabled",
        outcome="success",
    )
    assert (await session.execute(select(AuditEvent))).scalars().all() == []


def test_audit_redacts_credentials_by_value() -> None:
    sanitized = sanitize_metadata({"note": "sk-test-501", "header": "Bearer abc", "steps": ("a", "sk-x")})
    assert sanitized == {"note": "[REDACTED]", "header": "[REDACTED]", "steps": ["a", "[REDACTED]"]}
