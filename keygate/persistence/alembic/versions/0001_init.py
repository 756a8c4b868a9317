"""init key policy tables

Revision ID: 0001_init
Revises:
Create Date: 2026-02-14
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Singleton policy row; id is always 1.
    op.create_table(
        "policy_state",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("inactivity_hours", sa.Integer(), nullable=False),
        sa.Column("daily_reactivate_hour", sa.Integer(), nullable=False),
        sa.Column("daily_reactivate_minute", sa.Integer(), nullable=False),
        sa.Column("last_sweep_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("external_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("avatar_template", sa.String(), nullable=True),
        sa.Column("trust_level", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("role", sa.String(), server_default=sa.text("'user'"), nullable=False),
        sa.Column("is_banned", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("ban_reason", sa.Text(), nullable=True),
        sa.Column("remote_user_id", sa.BigInteger(), nullable=True),
        sa.Column("remote_key_id", sa.BigInteger(), nullable=True),
        sa.Column("remote_api_key_sealed", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_known_usage", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("key_auto_disabled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("auto_disabled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
    # Supports the sweep scan over non-banned users holding a key.
    op.create_index("ix_users_banned_key", "users", ["is_banned", "remote_key_id"], unique=False)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index(
        "ix_audit_events_event_type_occurred_at",
        "audit_events",
        ["event_type", "occurred_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_users_banned_key", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")
    op.drop_table("policy_state")
