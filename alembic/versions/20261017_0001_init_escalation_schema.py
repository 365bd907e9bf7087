"""init escalation schema

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261017_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    conversation_status = sa.Enum("open", "closed", name="conversation_status")
    alert_kind = sa.Enum("new_chat", "escalation", "closure", "generic", name="alert_kind")

    bind = op.get_bind()
    conversation_status.create(bind, checkfirst=True)
    alert_kind.create(bind, checkfirst=True)

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_key", sa.String(length=200), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("subscription_type", sa.String(length=80), nullable=False),
        sa.Column("property_name", sa.String(length=80), nullable=True),
        sa.Column("property_value", sa.String(length=255), nullable=True),
        sa.Column("change_flag", sa.String(length=40), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key", name="uq_webhook_events_event_key"),
    )
    op.create_index(
        "ix_webhook_events_conversation_id",
        "webhook_events",
        ["conversation_id"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_events_conversation_observed",
        "webhook_events",
        ["conversation_id", "observed_at"],
        unique=False,
    )

    op.create_table(
        "conversation_states",
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("current_assignee", sa.String(length=255), nullable=True),
        sa.Column(
            "has_had_bot_assignment",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("escalated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_from", sa.String(length=255), nullable=True),
        sa.Column("escalated_to", sa.String(length=255), nullable=True),
        sa.Column(
            "escalation_counted",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "status",
            sa.Enum("open", "closed", name="conversation_status", create_type=False),
            nullable=False,
            server_default=sa.text("'open'"),
        ),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_assignment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index(
        "ix_conversation_states_escalation_counted",
        "conversation_states",
        ["escalation_counted"],
        unique=False,
    )

    op.create_table(
        "support_counters",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("tickets_open", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tickets_chat", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tickets_email", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("tickets_other", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("sessions_active", sa.Integer(), nullable=True),
        sa.Column("sessions_escalated", sa.Integer(), nullable=True, server_default=sa.text("0")),
        sa.Column("source", sa.String(length=80), nullable=False, server_default="bootstrap"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "sessions_escalated IS NULL OR sessions_escalated >= 0",
            name="ck_support_counters_escalated_non_negative",
        ),
    )

    op.create_table(
        "alert_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(
                "new_chat",
                "escalation",
                "closure",
                "generic",
                name="alert_kind",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column("conversation_id", sa.String(length=64), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alert_log_conversation_id", "alert_log", ["conversation_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_alert_log_conversation_id", table_name="alert_log")
    op.drop_table("alert_log")

    op.drop_table("support_counters")

    op.drop_index(
        "ix_conversation_states_escalation_counted",
        table_name="conversation_states",
    )
    op.drop_table("conversation_states")

    op.drop_index("ix_webhook_events_conversation_observed", table_name="webhook_events")
    op.drop_index("ix_webhook_events_conversation_id", table_name="webhook_events")
    op.drop_table("webhook_events")

    bind = op.get_bind()
    sa.Enum(name="alert_kind").drop(bind, checkfirst=True)
    sa.Enum(name="conversation_status").drop(bind, checkfirst=True)
