"""Follow-up reminder model: a scheduled nudge surfaced to the owning user."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, enum_values


class ReminderType(str, enum.Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"
    DASHBOARD = "dashboard"


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FollowUpReminder(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "follow_up_reminders"
    __table_args__ = (
        Index("ix_follow_up_reminders_status_time", "status", "reminder_time"),
    )

    follow_up_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("follow_ups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    reminder_type: Mapped[ReminderType] = mapped_column(
        Enum(ReminderType, name="reminder_type", values_callable=enum_values),
        default=ReminderType.DASHBOARD,
        nullable=False,
    )
    reminder_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus, name="reminder_status", values_callable=enum_values),
        default=ReminderStatus.PENDING,
        nullable=False,
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_title: Mapped[str] = mapped_column(String(500), nullable=False)
    reminder_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<FollowUpReminder {self.id} status={self.status.value}>"
