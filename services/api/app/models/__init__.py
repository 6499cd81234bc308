"""Chaser database models."""

from app.models.automation_execution import (
    AutomationExecution,
    ExecutionResult,
    ExecutionStatus,
)
from app.models.automation_rule import AutomationRule
from app.models.follow_up import FollowUp, FollowUpPriority, FollowUpStatus, FollowUpType
from app.models.follow_up_reminder import FollowUpReminder, ReminderStatus, ReminderType

__all__ = [
    "FollowUp",
    "FollowUpStatus",
    "FollowUpType",
    "FollowUpPriority",
    "FollowUpReminder",
    "ReminderStatus",
    "ReminderType",
    "AutomationRule",
    "AutomationExecution",
    "ExecutionStatus",
    "ExecutionResult",
]
