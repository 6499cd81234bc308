"""Automation rule, execution and approval endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies import get_automation_service, get_current_organization_id, get_current_user_id
from app.models.automation_execution import ExecutionStatus
from app.schemas.automation import (
    ApprovalDecision,
    AutomationExecutionList,
    AutomationExecutionResponse,
    AutomationRuleCreate,
    AutomationRuleList,
    AutomationRuleResponse,
    AutomationRuleUpdate,
    AutomationStats,
)
from app.services.automation_service import AutomationService

router = APIRouter(prefix="/automation", tags=["automation"])


# --- Rules ---


@router.post("/rules", response_model=AutomationRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    body: AutomationRuleCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: AutomationService = Depends(get_automation_service),
):
    """Create an automation rule."""
    rule = await service.create_rule(user_id, body, organization_id)
    if rule is None:
        raise HTTPException(status_code=503, detail="Rule could not be saved")
    return AutomationRuleResponse.model_validate(rule)


@router.get("/rules", response_model=AutomationRuleList)
async def list_rules(
    active_only: bool = False,
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: AutomationService = Depends(get_automation_service),
):
    rules = await service.get_rules(user_id, organization_id, active_only=active_only)
    return AutomationRuleList(
        rules=[AutomationRuleResponse.model_validate(r) for r in rules],
        total=len(rules),
    )


@router.patch("/rules/{rule_id}", response_model=AutomationRuleResponse)
async def update_rule(
    rule_id: uuid.UUID,
    body: AutomationRuleUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    rule = await service.update_rule(rule_id, user_id, body)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return AutomationRuleResponse.model_validate(rule)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    """Deactivate a rule; its execution history is kept."""
    if not await service.delete_rule(rule_id, user_id):
        raise HTTPException(status_code=404, detail="Rule not found")


# --- Executions ---


@router.get("/executions", response_model=AutomationExecutionList)
async def list_executions(
    rule_id: uuid.UUID | None = None,
    status_filter: ExecutionStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    executions = await service.get_executions(user_id, rule_id=rule_id, status=status_filter, limit=limit)
    return AutomationExecutionList(
        executions=[AutomationExecutionResponse.model_validate(e) for e in executions],
        total=len(executions),
    )


@router.get("/approvals/pending", response_model=AutomationExecutionList)
async def pending_approvals(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    """Executions waiting on the caller's decision."""
    executions = await service.get_pending_approvals(user_id)
    return AutomationExecutionList(
        executions=[AutomationExecutionResponse.model_validate(e) for e in executions],
        total=len(executions),
    )


@router.post("/executions/{execution_id}/approval", response_model=AutomationExecutionResponse)
async def decide_approval(
    execution_id: uuid.UUID,
    body: ApprovalDecision,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    """Approve or reject an execution awaiting approval."""
    execution = await service.get_execution(execution_id)
    # Executions the caller may not vote on are reported as missing
    if execution is None or not await service.is_eligible_approver(execution, user_id):
        raise HTTPException(status_code=404, detail="Execution not found")
    if not await service.process_approval(execution_id, user_id, body.approved, body.comment):
        raise HTTPException(status_code=409, detail="Execution is not awaiting approval")
    return AutomationExecutionResponse.model_validate(await service.get_execution(execution_id))


@router.post("/executions/{execution_id}/send", response_model=AutomationExecutionResponse)
async def send_execution(
    execution_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: AutomationService = Depends(get_automation_service),
):
    """Dispatch an approved execution whose rule does not auto-send."""
    if await service.get_execution(execution_id, user_id) is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    execution = await service.send_approved_execution(execution_id, user_id)
    if execution is None:
        raise HTTPException(status_code=409, detail="Execution is not approved for sending")
    return AutomationExecutionResponse.model_validate(execution)


@router.get("/stats", response_model=AutomationStats)
async def automation_stats(
    user_id: uuid.UUID = Depends(get_current_user_id),
    organization_id: uuid.UUID | None = Depends(get_current_organization_id),
    service: AutomationService = Depends(get_automation_service),
):
    return AutomationStats(**await service.get_stats(user_id, organization_id))
