"""Follow-up model: one sent message awaiting a response."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, OwnedMixin, TimestampMixin, UUIDPrimaryKeyMixin, enum_values


class FollowUpStatus(str, enum.Enum):
    PENDING = "pending"
    DUE = "due"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FollowUpType(str, enum.Enum):
    MANUAL = "manual"
    AUTO = "auto"
    SCHEDULED = "scheduled"


class FollowUpPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_FOLLOW_UP_STATUSES = frozenset({FollowUpStatus.COMPLETED, FollowUpStatus.CANCELLED})
OPEN_FOLLOW_UP_STATUSES = frozenset(set(FollowUpStatus) - TERMINAL_FOLLOW_UP_STATUSES)


class FollowUp(Base, UUIDPrimaryKeyMixin, OwnedMixin, TimestampMixin):
    __tablename__ = "follow_ups"
    __table_args__ = (
        Index("ix_follow_ups_status_due_at", "status", "follow_up_due_at"),
        Index("ix_follow_ups_user_thread", "user_id", "thread_id"),
    )

    email_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    original_sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Only an explicit snooze may move this
    follow_up_due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    follow_up_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[FollowUpStatus] = mapped_column(
        Enum(FollowUpStatus, name="follow_up_status", values_callable=enum_values),
        default=FollowUpStatus.PENDING,
        nullable=False,
    )
    follow_up_type: Mapped[FollowUpType] = mapped_column(
        Enum(FollowUpType, name="follow_up_type", values_callable=enum_values),
        default=FollowUpType.MANUAL,
        nullable=False,
    )
    priority: Mapped[FollowUpPriority] = mapped_column(
        Enum(FollowUpPriority, name="follow_up_priority", values_callable=enum_values),
        default=FollowUpPriority.MEDIUM,
        nullable=False,
    )

    original_subject: Mapped[str] = mapped_column(Text, nullable=False)
    original_recipients: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    context_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    ai_draft_subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_draft_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_draft_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ai_draft_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    extra_data: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FOLLOW_UP_STATUSES

    def __repr__(self) -> str:
        return f"<FollowUp {self.id} status={self.status.value}>"
