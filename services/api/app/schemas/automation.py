"""Request/response schemas for follow-up automation endpoints."""

import re
import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

from app.models.automation_execution import ExecutionResult, ExecutionStatus
from app.models.follow_up import FollowUpPriority, FollowUpStatus


# --- Rule configuration ---

class TriggerConditions(BaseModel):
    days_overdue: int | None = Field(None, ge=0)
    priority_levels: list[FollowUpPriority] | None = None
    status_types: list[FollowUpStatus] | None = None
    recipient_patterns: list[str] | None = None
    time_of_day: str | None = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    # 0 = Sunday ... 6 = Saturday
    days_of_week: list[int] | None = None

    @field_validator("recipient_patterns")
    @classmethod
    def patterns_compile(cls, v: list[str] | None) -> list[str] | None:
        for pattern in v or []:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid recipient pattern {pattern!r}: {e}") from e
        return v

    @field_validator("days_of_week")
    @classmethod
    def weekdays_in_range(cls, v: list[int] | None) -> list[int] | None:
        if v and any(day < 0 or day > 6 for day in v):
            raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return v


class AutomationSettings(BaseModel):
    auto_generate_draft: bool = True
    auto_send: bool = False
    require_approval: bool = True
    # Minimum AI confidence to skip the approval gate
    approval_threshold: float | None = Field(None, ge=0.0, le=1.0)
    # Stored for a future retry/escalation policy; not acted on
    max_attempts: int | None = Field(None, ge=1)
    escalation_delay_hours: int | None = Field(None, ge=1)


class AIPreferences(BaseModel):
    tone: Literal["professional", "friendly", "urgent", "casual"] = "professional"
    approach: Literal["gentle", "direct", "value-add", "alternative"] = "gentle"
    max_length: Literal["short", "medium", "long"] = "medium"
    language: str = Field("English", max_length=50)
    custom_instructions: str | None = Field(None, max_length=2000)


class ApprovalWorkflow(BaseModel):
    approvers: list[uuid.UUID] = Field(..., min_length=1)
    require_all: bool = False
    timeout_hours: int = Field(24, ge=1, le=720)
    fallback_action: Literal["send", "skip", "escalate"] | None = None


class AutomationRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    trigger_conditions: TriggerConditions = Field(default_factory=TriggerConditions)
    automation_settings: AutomationSettings = Field(default_factory=AutomationSettings)
    ai_preferences: AIPreferences = Field(default_factory=AIPreferences)
    approval_workflow: ApprovalWorkflow | None = None
    is_active: bool = True


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    trigger_conditions: TriggerConditions | None = None
    automation_settings: AutomationSettings | None = None
    ai_preferences: AIPreferences | None = None
    approval_workflow: ApprovalWorkflow | None = None
    is_active: bool | None = None


class AutomationRuleResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    organization_id: uuid.UUID | None = None
    name: str
    description: str | None = None
    trigger_conditions: dict[str, Any]
    automation_settings: dict[str, Any]
    ai_preferences: dict[str, Any]
    approval_workflow: dict[str, Any] | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class AutomationRuleList(BaseModel):
    rules: list[AutomationRuleResponse]
    total: int


# --- Executions ---

class ApprovalRecord(BaseModel):
    approver_id: str
    approved: bool
    approved_at: datetime
    comment: str | None = None


class ApprovalDecision(BaseModel):
    approved: bool
    comment: str | None = Field(None, max_length=1000)


class AutomationExecutionResponse(BaseModel):
    id: uuid.UUID
    rule_id: uuid.UUID
    follow_up_id: uuid.UUID
    user_id: uuid.UUID
    triggered_at: datetime
    status: ExecutionStatus
    draft_generated_at: datetime | None = None
    draft_subject: str | None = None
    draft_body: str | None = None
    ai_confidence: float | None = None
    ai_reasoning: str | None = None
    approval_requested_at: datetime | None = None
    approval_deadline: datetime | None = None
    approvals: list[ApprovalRecord] = []
    executed_at: datetime | None = None
    execution_result: ExecutionResult | None = None
    error_message: str | None = None
    response_received: bool = False
    response_received_at: datetime | None = None
    response_time_hours: float | None = None
    metadata: dict = Field(
        default_factory=dict,
        validation_alias=AliasChoices("extra_data", "metadata"),
    )

    model_config = {"from_attributes": True}


class AutomationExecutionList(BaseModel):
    executions: list[AutomationExecutionResponse]
    total: int


class AutomationStats(BaseModel):
    total_rules: int = 0
    active_rules: int = 0
    total_executions: int = 0
    pending_approvals: int = 0
    success_rate: float = 0.0
    avg_response_time_hours: float = 0.0
