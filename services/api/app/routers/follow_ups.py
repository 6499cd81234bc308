"""Follow-up tracking endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies import (
    get_automation_service,
    get_current_organization_id,
    get_current_user_id,
    get_follow_up_service,
)
from app.models.follow_up import FollowUp, FollowUpPriority, FollowUpStatus
from app.schemas.follow_up import (
    FollowUpBulkUpdate,
    FollowUpBulkUpdateResponse,
    FollowUpComplete,
    FollowUpCreate,
    FollowUpList,
    FollowUpMarkSent,
    FollowUpResponse,
    FollowUpSnooze,
    FollowUpStats,
    FollowUpTrack,
    IncomingEmail,
    IncomingEmailResult,
    ReminderList,
    ReminderResponse,
)
from app.services.automation_service import AutomationService
from app.services.follow_up_service import FollowUpService

router = APIRouter(prefix="/followups", tags=["followups"])


def _list(follow_ups: list[FollowUp]) -> FollowUpList:
    return FollowUpList(
        follow_ups=[FollowUpResponse.model_validate(f) for f in follow_ups],
        total=len(follow_ups),
    )


async def _owned_follow_up(
    service: FollowUpService,
    follow_up_id: uuid.UUID,
    user_id: uuid.UUID,
) -> FollowUp:
    follow_up = await service.get_follow_up(follow_up_id, user_id)
    if follow_up is None:
        raise HTTPException(status_code=404, detail="Follow-up not found")
    return follow_up


@router.post("", response_model=FollowUpResponse, status_code=status.HTTP_201_CREATED)
async def create_follow_up(
    body: FollowUpCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Start tracking a sent email for follow-up."""
    follow_up = await service.create_follow_up(
        user_id=user_id,
        organization_id=organization_id,
        email_id=body.email_id,
        thread_id=body.thread_id,
        original_sent_at=body.original_sent_at,
        original_subject=body.original_subject,
        original_recipients=body.original_recipients,
        follow_up_days=body.follow_up_days,
        priority=body.priority,
        follow_up_type=body.follow_up_type,
        context_summary=body.context_summary,
        follow_up_reason=body.follow_up_reason,
        metadata=body.metadata,
    )
    if follow_up is None:
        raise HTTPException(status_code=422, detail="Follow-up not created (auto-reply subject or storage error)")
    return FollowUpResponse.model_validate(follow_up)


@router.post("/track", response_model=FollowUpResponse | None)
async def track_sent_email(
    body: FollowUpTrack,
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Send-tracking hook. Returns null when the email is not tracked."""
    follow_up = await service.track_sent_email(
        user_id=user_id,
        organization_id=organization_id,
        email_id=body.email_id,
        thread_id=body.thread_id,
        subject=body.subject,
        recipients=body.recipients,
        sent_at=body.sent_at,
        auto_follow_up=body.auto_follow_up,
        follow_up_days=body.follow_up_days,
        priority=body.priority,
    )
    return FollowUpResponse.model_validate(follow_up) if follow_up else None


@router.get("", response_model=FollowUpList)
async def list_follow_ups(
    status_filter: list[FollowUpStatus] | None = Query(None, alias="status"),
    priority: list[FollowUpPriority] | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """List follow-ups, soonest due first."""
    follow_ups = await service.get_follow_ups(
        user_id,
        statuses=status_filter,
        priorities=priority,
        organization_id=organization_id,
        limit=limit,
    )
    return _list(follow_ups)


@router.get("/due", response_model=FollowUpList)
async def list_due_follow_ups(
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Follow-ups that are due or overdue."""
    return _list(await service.get_due_follow_ups(user_id, organization_id))


@router.get("/stats", response_model=FollowUpStats)
async def follow_up_stats(
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    return FollowUpStats(**await service.get_follow_up_stats(user_id, organization_id))


@router.get("/by-email/{email_id}", response_model=FollowUpList)
async def follow_ups_by_email(
    email_id: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    return _list(await service.get_follow_ups_by_email_id(email_id, user_id))


@router.get("/reminders", response_model=ReminderList)
async def pending_reminders(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Pending reminders whose time has come."""
    reminders = await service.get_pending_reminders(user_id)
    return ReminderList(
        reminders=[ReminderResponse.model_validate(r) for r in reminders],
        total=len(reminders),
    )


@router.post("/responses", response_model=IncomingEmailResult)
async def record_incoming_email(
    body: IncomingEmail,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
    automation: AutomationService = Depends(get_automation_service),
):
    """Response detection: complete follow-ups answered by this message."""
    completed = await service.process_incoming_email(
        user_id,
        body.thread_id,
        body.from_addr,
        body.received_at,
    )
    for follow_up_id in completed:
        await automation.record_response(follow_up_id, body.received_at)
    return IncomingEmailResult(completed_follow_up_ids=completed)


@router.patch("/bulk", response_model=FollowUpBulkUpdateResponse)
async def bulk_update_follow_ups(
    body: FollowUpBulkUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Apply one patch to many follow-ups. Terminal or foreign records are skipped."""
    updated = await service.bulk_update(
        body.ids,
        body.patch.model_dump(exclude_none=True),
        user_id=user_id,
    )
    if updated is None:
        raise HTTPException(status_code=503, detail="Bulk update failed; retry the request")
    return FollowUpBulkUpdateResponse(requested=len(body.ids), updated=updated)


@router.post("/{follow_up_id}/snooze", response_model=FollowUpResponse)
async def snooze_follow_up(
    follow_up_id: uuid.UUID,
    body: FollowUpSnooze,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    await _owned_follow_up(service, follow_up_id, user_id)
    if not await service.snooze_follow_up(follow_up_id, body.snooze_until):
        raise HTTPException(status_code=409, detail="Follow-up is already closed")
    return FollowUpResponse.model_validate(await _owned_follow_up(service, follow_up_id, user_id))


@router.post("/{follow_up_id}/complete", response_model=FollowUpResponse)
async def complete_follow_up(
    follow_up_id: uuid.UUID,
    body: FollowUpComplete | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Mark a follow-up completed because the recipient responded."""
    await _owned_follow_up(service, follow_up_id, user_id)
    responded_at = body.responded_at if body else None
    if not await service.mark_completed(follow_up_id, responded_at):
        raise HTTPException(status_code=409, detail="Follow-up is already closed")
    return FollowUpResponse.model_validate(await _owned_follow_up(service, follow_up_id, user_id))


@router.post("/{follow_up_id}/sent", response_model=FollowUpResponse)
async def mark_follow_up_sent(
    follow_up_id: uuid.UUID,
    body: FollowUpMarkSent | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    """Mark a follow-up completed because a follow-up message was sent."""
    await _owned_follow_up(service, follow_up_id, user_id)
    sent_at = body.sent_at if body else None
    if not await service.mark_sent(follow_up_id, sent_at):
        raise HTTPException(status_code=409, detail="Follow-up is already closed")
    return FollowUpResponse.model_validate(await _owned_follow_up(service, follow_up_id, user_id))


@router.post("/{follow_up_id}/cancel", response_model=FollowUpResponse)
async def cancel_follow_up(
    follow_up_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: FollowUpService = Depends(get_follow_up_service),
):
    await _owned_follow_up(service, follow_up_id, user_id)
    if not await service.cancel_follow_up(follow_up_id):
        raise HTTPException(status_code=409, detail="Follow-up is already closed")
    return FollowUpResponse.model_validate(await _owned_follow_up(service, follow_up_id, user_id))
