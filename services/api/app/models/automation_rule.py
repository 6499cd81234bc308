"""Automation rule model: which follow-ups to act on, and how."""

from sqlalchemy import Boolean, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, OwnedMixin, TimestampMixin, UUIDPrimaryKeyMixin


class AutomationRule(Base, UUIDPrimaryKeyMixin, OwnedMixin, TimestampMixin):
    __tablename__ = "automation_rules"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Each key is optional; absent keys impose no constraint:
    # {
    #   "days_overdue": 2,
    #   "priority_levels": ["high", "urgent"],
    #   "status_types": ["due", "overdue"],
    #   "recipient_patterns": ["@acme\\.com$"],
    #   "time_of_day": "09:00",
    #   "days_of_week": [1, 2, 3, 4, 5]          # 0 = Sunday
    # }
    trigger_conditions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # {"auto_generate_draft": true, "auto_send": false, "require_approval": true,
    #  "approval_threshold": 0.7, "max_attempts": 3, "escalation_delay_hours": 48}
    automation_settings: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # {"tone": "professional", "approach": "gentle", "max_length": "medium",
    #  "language": "English", "custom_instructions": "..."}
    ai_preferences: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # {"approvers": ["<uuid>", ...], "require_all": true, "timeout_hours": 24,
    #  "fallback_action": "send" | "skip" | "escalate" | null}
    approval_workflow: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    @property
    def settings(self) -> dict:
        return self.automation_settings or {}

    @property
    def workflow(self) -> dict:
        return self.approval_workflow or {}

    def __repr__(self) -> str:
        return f"<AutomationRule {self.name} user_id={self.user_id}>"
