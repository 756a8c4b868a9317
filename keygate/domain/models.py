from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


POLICY_STATE_ID = 1


class PolicyState(Base):
    __tablename__ = "policy_state"

    # Singleton row holding the key policy tunables and sweep bookkeeping.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    inactivity_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_reactivate_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_reactivate_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    # Boundary instant of the most recent completed reactivation sweep.
    last_sweep_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TrackedUser(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_banned_key", "is_banned", "remote_key_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Stable identity-provider user id; the login flow keys on this.
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    username: Mapped[str] = mapped_column(String)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    avatar_template: Mapped[str | None] = mapped_column(String, nullable=True)
    trust_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    role: Mapped[str] = mapped_column(String, default="user", nullable=False)
    # Ban is an administrative flag; the key policy never acts on banned users.
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ban_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Backend references; a null key id means no key has been issued yet.
    remote_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    remote_key_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Sealed with AES-256-GCM; plaintext key material is never stored.
    remote_api_key_sealed: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Backend usage counters can be fractional (spend-based), so compare as floats.
    last_known_usage: Mapped[float] = mapped_column(
        Float, default=0, server_default=text("0"), nullable=False
    )
    key_auto_disabled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    auto_disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_event_type_occurred_at", "event_type", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Metadata is sanitized before insert to keep secrets out of the audit trail.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
