"""Request/response schemas for follow-up tracking endpoints."""

import uuid
from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, AliasChoices, BaseModel, Field, model_validator

from app.models.follow_up import FollowUpPriority, FollowUpStatus, FollowUpType
from app.models.follow_up_reminder import ReminderStatus, ReminderType


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


# --- Follow-ups ---

class FollowUpCreate(BaseModel):
    email_id: str = Field(..., min_length=1, max_length=255)
    thread_id: str | None = Field(None, max_length=255)
    original_sent_at: UTCDateTime
    original_subject: str = Field(..., min_length=1, max_length=998)
    original_recipients: list[str] = Field(..., min_length=1)
    follow_up_days: int | None = Field(None, ge=1, le=365)
    priority: FollowUpPriority = FollowUpPriority.MEDIUM
    follow_up_type: FollowUpType = FollowUpType.MANUAL
    context_summary: str | None = None
    follow_up_reason: str | None = None
    metadata: dict = Field(default_factory=dict)


class FollowUpTrack(BaseModel):
    """Payload sent by the mail pipeline whenever a message goes out."""

    email_id: str = Field(..., min_length=1, max_length=255)
    thread_id: str | None = Field(None, max_length=255)
    subject: str = Field(..., max_length=998)
    recipients: list[str] = Field(..., min_length=1)
    sent_at: UTCDateTime
    auto_follow_up: bool = True
    follow_up_days: int | None = Field(None, ge=1, le=365)
    priority: FollowUpPriority = FollowUpPriority.MEDIUM


class FollowUpSnooze(BaseModel):
    snooze_until: UTCDateTime


class FollowUpComplete(BaseModel):
    responded_at: UTCDateTime | None = None


class FollowUpMarkSent(BaseModel):
    sent_at: UTCDateTime | None = None


class FollowUpPatch(BaseModel):
    status: FollowUpStatus | None = None
    priority: FollowUpPriority | None = None
    context_summary: str | None = None
    follow_up_reason: str | None = None

    @model_validator(mode="after")
    def require_a_field(self) -> "FollowUpPatch":
        if not self.model_dump(exclude_none=True):
            raise ValueError("Patch must set at least one field")
        return self


class FollowUpBulkUpdate(BaseModel):
    ids: list[uuid.UUID] = Field(..., min_length=1, max_length=500)
    patch: FollowUpPatch


class FollowUpBulkUpdateResponse(BaseModel):
    requested: int
    updated: int


class IncomingEmail(BaseModel):
    """A received message, checked against open follow-ups on its thread."""

    message_id: str = Field(..., max_length=255)
    thread_id: str = Field(..., max_length=255)
    from_addr: str = Field(..., max_length=320)
    received_at: UTCDateTime


class IncomingEmailResult(BaseModel):
    completed_follow_up_ids: list[uuid.UUID]


class FollowUpResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    organization_id: uuid.UUID | None = None
    email_id: str
    thread_id: str | None = None
    original_sent_at: datetime
    follow_up_due_at: datetime
    follow_up_sent_at: datetime | None = None
    response_received_at: datetime | None = None
    status: FollowUpStatus
    follow_up_type: FollowUpType
    priority: FollowUpPriority
    original_subject: str
    original_recipients: list[str]
    context_summary: str | None = None
    follow_up_reason: str | None = None
    ai_draft_subject: str | None = None
    ai_draft_content: str | None = None
    ai_draft_generated_at: datetime | None = None
    ai_draft_approved: bool = False
    reminder_count: int = 0
    last_reminder_at: datetime | None = None
    metadata: dict = Field(
        default_factory=dict,
        validation_alias=AliasChoices("extra_data", "metadata"),
    )
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class FollowUpList(BaseModel):
    follow_ups: list[FollowUpResponse]
    total: int


class FollowUpStats(BaseModel):
    total_follow_ups: int = 0
    pending_follow_ups: int = 0
    due_follow_ups: int = 0
    overdue_follow_ups: int = 0
    completed_follow_ups: int = 0
    response_rate: float = 0.0


# --- Reminders ---

class ReminderResponse(BaseModel):
    id: uuid.UUID
    follow_up_id: uuid.UUID
    user_id: uuid.UUID
    reminder_type: ReminderType
    reminder_time: datetime
    status: ReminderStatus
    sent_at: datetime | None = None
    error_message: str | None = None
    reminder_title: str
    reminder_message: str | None = None

    model_config = {"from_attributes": True}


class ReminderList(BaseModel):
    reminders: list[ReminderResponse]
    total: int
