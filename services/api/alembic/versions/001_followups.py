"""Follow-up tracking and automation schema.

Revision ID: 001_followups
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_followups"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # --- follow_ups ---
    op.create_table(
        "follow_ups",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("email_id", sa.String(255), nullable=False),
        sa.Column("thread_id", sa.String(255), nullable=True),
        sa.Column("original_sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("follow_up_due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("follow_up_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "due", "overdue", "completed", "cancelled", name="follow_up_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "follow_up_type",
            sa.Enum("manual", "auto", "scheduled", name="follow_up_type"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column(
            "priority",
            sa.Enum("low", "medium", "high", "urgent", name="follow_up_priority"),
            nullable=False,
            server_default="medium",
        ),
        sa.Column("original_subject", sa.Text, nullable=False),
        sa.Column("original_recipients", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("context_summary", sa.Text, nullable=True),
        sa.Column("follow_up_reason", sa.Text, nullable=True),
        sa.Column("ai_draft_subject", sa.Text, nullable=True),
        sa.Column("ai_draft_content", sa.Text, nullable=True),
        sa.Column("ai_draft_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_draft_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reminder_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("ix_follow_ups_user_id", "follow_ups", ["user_id"])
    op.create_index("ix_follow_ups_organization_id", "follow_ups", ["organization_id"])
    op.create_index("ix_follow_ups_email_id", "follow_ups", ["email_id"])
    op.create_index("ix_follow_ups_status_due_at", "follow_ups", ["status", "follow_up_due_at"])
    op.create_index("ix_follow_ups_user_thread", "follow_ups", ["user_id", "thread_id"])

    # --- follow_up_reminders ---
    op.create_table(
        "follow_up_reminders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "follow_up_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("follow_ups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "reminder_type",
            sa.Enum("notification", "email", "dashboard", name="reminder_type"),
            nullable=False,
            server_default="dashboard",
        ),
        sa.Column("reminder_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", "cancelled", name="reminder_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("reminder_title", sa.String(500), nullable=False),
        sa.Column("reminder_message", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_follow_up_reminders_follow_up_id", "follow_up_reminders", ["follow_up_id"])
    op.create_index("ix_follow_up_reminders_user_id", "follow_up_reminders", ["user_id"])
    op.create_index("ix_follow_up_reminders_status_time", "follow_up_reminders", ["status", "reminder_time"])

    # --- automation_rules ---
    op.create_table(
        "automation_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("trigger_conditions", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("automation_settings", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("ai_preferences", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("approval_workflow", postgresql.JSONB, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_automation_rules_user_id", "automation_rules", ["user_id"])
    op.create_index("ix_automation_rules_organization_id", "automation_rules", ["organization_id"])
    op.create_index("ix_automation_rules_is_active", "automation_rules", ["is_active"])

    # --- automation_executions ---
    op.create_table(
        "automation_executions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "rule_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("automation_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "follow_up_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("follow_ups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "generating",
                "awaiting_approval",
                "approved",
                "rejected",
                "sent",
                "failed",
                "skipped",
                name="execution_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("revision", sa.Integer, nullable=False, server_default="0"),
        sa.Column("draft_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("draft_subject", sa.Text, nullable=True),
        sa.Column("draft_body", sa.Text, nullable=True),
        sa.Column("ai_confidence", sa.Float, nullable=True),
        sa.Column("ai_reasoning", sa.Text, nullable=True),
        sa.Column("approval_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approvals", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("dispatch_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "execution_result",
            sa.Enum("sent", "failed", "skipped", name="execution_result"),
            nullable=True,
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("response_received", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("response_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_time_hours", sa.Float, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("ix_automation_executions_rule_id", "automation_executions", ["rule_id"])
    op.create_index("ix_automation_executions_follow_up_id", "automation_executions", ["follow_up_id"])
    op.create_index("ix_automation_executions_user_id", "automation_executions", ["user_id"])
    op.create_index(
        "ix_automation_executions_status_deadline",
        "automation_executions",
        ["status", "approval_deadline"],
    )
    # At most one in-flight execution per (rule, follow-up)
    op.create_index(
        "uq_automation_executions_active_pair",
        "automation_executions",
        ["rule_id", "follow_up_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'generating', 'awaiting_approval')"),
    )


def downgrade() -> None:
    op.drop_table("automation_executions")
    op.drop_table("automation_rules")
    op.drop_table("follow_up_reminders")
    op.drop_table("follow_ups")
    for enum_name in (
        "execution_result",
        "execution_status",
        "reminder_status",
        "reminder_type",
        "follow_up_priority",
        "follow_up_type",
        "follow_up_status",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
