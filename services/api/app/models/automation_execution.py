"""Automation execution model: one attempt of one rule against one follow-up."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, enum_values


class ExecutionStatus(str, enum.Enum):
    PENDING = "pending"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionResult(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


# At most one execution in these states may exist per (rule, follow-up) pair
ACTIVE_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.PENDING,
    ExecutionStatus.GENERATING,
    ExecutionStatus.AWAITING_APPROVAL,
})
TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.SENT,
    ExecutionStatus.FAILED,
    ExecutionStatus.SKIPPED,
    ExecutionStatus.REJECTED,
})


class AutomationExecution(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "automation_executions"
    __table_args__ = (
        Index(
            "uq_automation_executions_active_pair",
            "rule_id",
            "follow_up_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'generating', 'awaiting_approval')"),
        ),
        Index("ix_automation_executions_status_deadline", "status", "approval_deadline"),
    )

    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    follow_up_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("follow_ups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)

    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus, name="execution_status", values_callable=enum_values),
        default=ExecutionStatus.PENDING,
        nullable=False,
    )
    # Bumped on every transition; conditional writes compare against it
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    draft_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    draft_subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    draft_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    approval_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approval_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Append-only: [{"approver_id", "approved", "approved_at", "comment"}]
    approvals: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    dispatch_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_result: Mapped[ExecutionResult | None] = mapped_column(
        Enum(ExecutionResult, name="execution_result", values_callable=enum_values),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    response_received: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    response_received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    response_time_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    extra_data: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def __repr__(self) -> str:
        return f"<AutomationExecution {self.id} status={self.status.value}>"
