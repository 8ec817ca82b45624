"""Create accounts, circle, readings, CGM connection and alert tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enums are stored as their string values
ENUM = sa.String(32)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("role", ENUM, nullable=False),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("low_threshold", sa.Integer(), nullable=False, server_default="70"),
        sa.Column("high_threshold", sa.Integer(), nullable=False, server_default="180"),
        sa.Column(
            "high_alert_delay_minutes", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "linked_owner_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "notify_glucose_alerts", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "notify_acknowledgments", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "notify_alert_resolved", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "low_threshold >= 40 AND low_threshold < high_threshold "
            "AND high_threshold <= 400",
            name="ck_accounts_thresholds",
        ),
        sa.CheckConstraint(
            "high_alert_delay_minutes >= 0 AND high_alert_delay_minutes <= 120",
            name="ck_accounts_high_delay",
        ),
    )
    op.create_index("ix_accounts_linked_owner_id", "accounts", ["linked_owner_id"])

    op.create_table(
        "circle_memberships",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "member_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=True,
            unique=True,
        ),
        sa.Column("invite_code", sa.String(8), nullable=True, unique=True),
        sa.Column("status", ENUM, nullable=False, server_default="pending"),
        sa.Column("view_glucose", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "receive_low_alerts", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "receive_high_alerts", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "member_id IS NULL OR member_id != owner_id", name="ck_no_self_membership"
        ),
    )
    op.create_index(
        "ix_circle_memberships_owner_id", "circle_memberships", ["owner_id"]
    )

    op.create_table(
        "glucose_readings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("trend", ENUM, nullable=False, server_default="stable"),
        sa.Column("source", ENUM, nullable=False),
        sa.Column("reading_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_glucose_readings_owner_id", "glucose_readings", ["owner_id"])
    op.create_index(
        "ix_glucose_readings_owner_timestamp",
        "glucose_readings",
        ["owner_id", "reading_timestamp"],
    )

    op.create_table(
        "cgm_connections",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("connection_type", ENUM, nullable=False),
        sa.Column("encrypted_payload", sa.Text(), nullable=False),
        sa.Column("region", ENUM, nullable=True),
        sa.Column("connected", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "owner_id", "connection_type", name="uq_owner_connection_type"
        ),
    )
    op.create_index("ix_cgm_connections_owner_id", "cgm_connections", ["owner_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("alert_type", ENUM, nullable=False),
        sa.Column("family", ENUM, nullable=False),
        sa.Column("severity", ENUM, nullable=False),
        sa.Column("glucose_value", sa.Integer(), nullable=True),
        sa.Column("status", ENUM, nullable=False, server_default="active"),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "resolved_by",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_alerts_owner_id", "alerts", ["owner_id"])
    op.create_index("ix_alerts_owner_created", "alerts", ["owner_id", "created_at"])
    # At most one open alert per owner and family
    op.create_index(
        "uq_alerts_open_family",
        "alerts",
        ["owner_id", "family"],
        unique=True,
        postgresql_where=sa.text("status <> 'resolved'"),
        sqlite_where=sa.text("status <> 'resolved'"),
    )

    op.create_table(
        "alert_acknowledgments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "alert_id",
            sa.Uuid(),
            sa.ForeignKey("alerts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_name", sa.String(100), nullable=False),
        sa.Column("message", sa.String(200), nullable=False),
        sa.Column(
            "acknowledged_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("alert_id", "user_id", name="uq_alert_acknowledgment_user"),
    )
    op.create_index(
        "ix_alert_acknowledgments_alert_id", "alert_acknowledgments", ["alert_id"]
    )


def downgrade() -> None:
    op.drop_table("alert_acknowledgments")
    op.drop_index("uq_alerts_open_family", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("cgm_connections")
    op.drop_table("glucose_readings")
    op.drop_table("circle_memberships")
    op.drop_table("accounts")
