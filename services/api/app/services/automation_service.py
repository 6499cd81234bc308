"""Automation rules and the execution state machine.

An execution is one attempt of one rule against one follow-up:

    pending -> generating -> awaiting_approval -> approved -> sent
                   |               |      |                  \\-> failed
                   v               v      v
                 failed        rejected  skipped

Every transition is a conditional UPDATE on (status, revision). A write that
matches no row lost a race and changes nothing.
"""

import logging
import uuid
from collections.abc import Collection
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.config import Settings
from app.metrics import approvals_total, executions_total
from app.models.automation_execution import (
    ACTIVE_EXECUTION_STATUSES,
    AutomationExecution,
    ExecutionResult,
    ExecutionStatus,
)
from app.models.automation_rule import AutomationRule
from app.models.base import utcnow
from app.models.follow_up import OPEN_FOLLOW_UP_STATUSES, FollowUp
from app.models.follow_up_reminder import ReminderType
from app.schemas.automation import AIPreferences, AutomationRuleCreate, AutomationRuleUpdate
from app.services.ai_service import AIService, DraftGenerationError, FollowUpDraftContext, get_ai_service
from app.services.follow_up_service import FollowUpService
from app.services.mail_service import FollowUpSender, SendError, get_follow_up_sender
from app.services.rules_engine import match_follow_ups

logger = logging.getLogger(__name__)

FALLBACK_ACTIONS = ("send", "skip", "escalate")


class AutomationService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        follow_ups: FollowUpService,
        draft_generator: AIService,
        sender: FollowUpSender,
    ) -> None:
        self._db = db
        self._settings = settings
        self._follow_ups = follow_ups
        self._drafts = draft_generator
        self._sender = sender
        self._tz = ZoneInfo(settings.automation_timezone)

    # --- Rules ---

    async def create_rule(
        self,
        user_id: uuid.UUID,
        data: AutomationRuleCreate,
        organization_id: uuid.UUID | None = None,
    ) -> AutomationRule | None:
        rule = AutomationRule(
            id=uuid.uuid4(),
            user_id=user_id,
            organization_id=organization_id,
            name=data.name,
            description=data.description,
            trigger_conditions=data.trigger_conditions.model_dump(mode="json", exclude_none=True),
            automation_settings=data.automation_settings.model_dump(mode="json"),
            ai_preferences=data.ai_preferences.model_dump(mode="json"),
            approval_workflow=(
                data.approval_workflow.model_dump(mode="json") if data.approval_workflow else None
            ),
            is_active=data.is_active,
        )
        try:
            self._db.add(rule)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to create automation rule for user %s: %s", user_id, e)
            return None
        logger.info("Created automation rule %s (%s)", rule.id, rule.name)
        return rule

    async def get_rule(self, rule_id: uuid.UUID, user_id: uuid.UUID | None = None) -> AutomationRule | None:
        query = select(AutomationRule).where(AutomationRule.id == rule_id)
        if user_id is not None:
            query = query.where(AutomationRule.user_id == user_id)
        try:
            result = await self._db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Error fetching automation rule %s: %s", rule_id, e)
            return None

    async def get_rules(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID | None = None,
        active_only: bool = False,
    ) -> list[AutomationRule]:
        query = select(AutomationRule).where(AutomationRule.user_id == user_id)
        if organization_id is not None:
            query = query.where(AutomationRule.organization_id == organization_id)
        if active_only:
            query = query.where(AutomationRule.is_active.is_(True))
        query = query.order_by(AutomationRule.created_at.desc())
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching automation rules for user %s: %s", user_id, e)
            return []

    async def get_active_rules(self) -> list[AutomationRule]:
        """All active rules across users, for the sweep."""
        try:
            result = await self._db.execute(
                select(AutomationRule)
                .where(AutomationRule.is_active.is_(True))
                .order_by(AutomationRule.created_at.asc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching active automation rules: %s", e)
            return []

    async def update_rule(
        self,
        rule_id: uuid.UUID,
        user_id: uuid.UUID,
        data: AutomationRuleUpdate,
    ) -> AutomationRule | None:
        rule = await self.get_rule(rule_id, user_id)
        if rule is None:
            return None

        for field, value in data.model_dump(mode="json", exclude_unset=True).items():
            if field == "trigger_conditions" and value is not None:
                value = {k: v for k, v in value.items() if v is not None}
            setattr(rule, field, value)

        try:
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to update automation rule %s: %s", rule_id, e)
            return None
        return rule

    async def delete_rule(self, rule_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        """Deactivate a rule. Its executions are kept for history."""
        try:
            result = await self._db.execute(
                update(AutomationRule)
                .where(AutomationRule.id == rule_id, AutomationRule.user_id == user_id)
                .values(is_active=False)
            )
            if result.rowcount == 0:
                await self._db.rollback()
                return False
            await self._db.commit()
            return True
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to deactivate automation rule %s: %s", rule_id, e)
            return False

    # --- Matching and execution records ---

    async def find_matching_follow_ups(self, rule: AutomationRule, now: datetime) -> list[FollowUp]:
        """Open follow-ups owned by the rule's user that satisfy its trigger conditions."""
        query = select(FollowUp).where(
            FollowUp.user_id == rule.user_id,
            FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
        )
        if rule.organization_id is not None:
            query = query.where(FollowUp.organization_id == rule.organization_id)
        query = query.execution_options(populate_existing=True)

        try:
            result = await self._db.execute(query)
            candidates = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-ups for rule %s: %s", rule.id, e)
            return []
        return match_follow_ups(rule.trigger_conditions or {}, candidates, now, self._tz)

    async def get_active_execution(
        self,
        rule_id: uuid.UUID,
        follow_up_id: uuid.UUID,
    ) -> AutomationExecution | None:
        try:
            result = await self._db.execute(
                select(AutomationExecution).where(
                    AutomationExecution.rule_id == rule_id,
                    AutomationExecution.follow_up_id == follow_up_id,
                    AutomationExecution.status.in_(list(ACTIVE_EXECUTION_STATUSES)),
                )
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error("Error checking active execution for rule %s: %s", rule_id, e)
            return None

    async def create_execution(
        self,
        rule: AutomationRule,
        follow_up: FollowUp,
        now: datetime,
    ) -> AutomationExecution | None:
        """Open a new execution, or return None if one is already active for the pair."""
        if await self.get_active_execution(rule.id, follow_up.id) is not None:
            logger.debug("Execution already active for rule %s / follow-up %s", rule.id, follow_up.id)
            return None

        execution = AutomationExecution(
            id=uuid.uuid4(),
            rule_id=rule.id,
            follow_up_id=follow_up.id,
            user_id=rule.user_id,
            triggered_at=now,
            status=ExecutionStatus.PENDING,
            revision=0,
            approvals=[],
            response_received=False,
            extra_data={"rule_name": rule.name},
        )
        try:
            self._db.add(execution)
            await self._db.commit()
        except IntegrityError:
            # Another worker opened the same pair first
            await self._db.rollback()
            logger.info("Concurrent execution exists for rule %s / follow-up %s", rule.id, follow_up.id)
            return None
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to create execution for rule %s: %s", rule.id, e)
            return None

        executions_total.labels(status=ExecutionStatus.PENDING.value).inc()
        return execution

    async def _transition(
        self,
        execution: AutomationExecution,
        status: ExecutionStatus,
        expected: Collection[ExecutionStatus],
        claim: bool = False,
        **values: Any,
    ) -> bool:
        """Conditionally move ``execution`` to ``status``.

        Matches on the in-memory revision as well as ``expected``, so a stale
        copy never overwrites a newer state. With ``claim`` the write also
        requires that no dispatch has been claimed yet.
        """
        previous = execution.status
        stmt = (
            update(AutomationExecution)
            .where(
                AutomationExecution.id == execution.id,
                AutomationExecution.status.in_(list(expected)),
                AutomationExecution.revision == execution.revision,
            )
            .values(status=status, revision=AutomationExecution.revision + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if claim:
            stmt = stmt.where(AutomationExecution.dispatch_claimed_at.is_(None))

        try:
            result = await self._db.execute(stmt)
            if result.rowcount == 0:
                await self._db.rollback()
                logger.info(
                    "Execution %s not moved %s -> %s (changed concurrently)",
                    execution.id,
                    getattr(previous, "value", previous),
                    status.value,
                )
                return False
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to move execution %s to %s: %s", execution.id, status.value, e)
            return False

        set_committed_value(execution, "status", status)
        set_committed_value(execution, "revision", execution.revision + 1)
        for key, value in values.items():
            set_committed_value(execution, key, value)
        if status != previous:
            executions_total.labels(status=status.value).inc()
        return True

    # --- Execution pipeline ---

    async def execute_automation(
        self,
        rule: AutomationRule,
        follow_up: FollowUp,
        execution: AutomationExecution,
        now: datetime | None = None,
    ) -> AutomationExecution:
        """Drive a fresh execution through draft, approval gate and dispatch."""
        now = now or utcnow()
        settings = rule.settings
        draft_values: dict[str, Any] = {}

        if settings.get("auto_generate_draft", True):
            if not await self._transition(execution, ExecutionStatus.GENERATING, {ExecutionStatus.PENDING}):
                return execution
            try:
                preferences = AIPreferences.model_validate(rule.ai_preferences or {})
                context = FollowUpDraftContext.from_follow_up(follow_up, now)
                draft = await self._drafts.generate_follow_up_draft(context, preferences)
            except (DraftGenerationError, ValidationError) as e:
                logger.warning("Draft generation failed for execution %s: %s", execution.id, e)
                await self._transition(
                    execution,
                    ExecutionStatus.FAILED,
                    {ExecutionStatus.GENERATING},
                    execution_result=ExecutionResult.FAILED,
                    executed_at=now,
                    error_message=str(e),
                )
                return execution

            draft_values = {
                "draft_generated_at": now,
                "draft_subject": draft.subject,
                "draft_body": draft.body,
                "ai_confidence": draft.confidence,
                "ai_reasoning": draft.reasoning,
            }
            await self._follow_ups.store_ai_draft(follow_up.id, draft.subject, draft.body, now)

        if settings.get("auto_send") and not self._needs_approval(rule, draft_values.get("ai_confidence")):
            await self.send_automated_follow_up(execution, follow_up, now, draft_values)
            return execution

        # Without auto_send the execution stays open until someone approves and sends it
        timeout_hours = rule.workflow.get("timeout_hours") or self._settings.default_approval_timeout_hours
        await self._transition(
            execution,
            ExecutionStatus.AWAITING_APPROVAL,
            {execution.status},
            approval_requested_at=now,
            approval_deadline=now + timedelta(hours=timeout_hours),
            **draft_values,
        )
        logger.info("Execution %s awaiting approval until %s", execution.id, execution.approval_deadline)
        return execution

    @staticmethod
    def _needs_approval(rule: AutomationRule, confidence: float | None) -> bool:
        settings = rule.settings
        if settings.get("require_approval", True):
            return True
        threshold = settings.get("approval_threshold")
        return threshold is not None and confidence is not None and confidence < threshold

    async def send_automated_follow_up(
        self,
        execution: AutomationExecution,
        follow_up: FollowUp,
        now: datetime | None = None,
        draft_values: dict[str, Any] | None = None,
    ) -> bool:
        """Dispatch the execution's draft exactly once.

        The dispatch claim is taken before calling the mail relay, so a
        concurrent or retried caller that loses the claim never sends.
        """
        now = now or utcnow()
        draft_values = draft_values or {}
        current = execution.status

        if follow_up.is_terminal:
            await self._transition(
                execution,
                ExecutionStatus.SKIPPED,
                {current},
                execution_result=ExecutionResult.SKIPPED,
                executed_at=now,
                error_message="Follow-up already closed",
                **draft_values,
            )
            return False

        subject = draft_values.get("draft_subject") or execution.draft_subject or follow_up.ai_draft_subject
        body = draft_values.get("draft_body") or execution.draft_body or follow_up.ai_draft_content
        if not (subject and body):
            await self._transition(
                execution,
                ExecutionStatus.FAILED,
                {current},
                execution_result=ExecutionResult.FAILED,
                executed_at=now,
                error_message="No draft available to send",
                **draft_values,
            )
            return False

        if not await self._transition(execution, current, {current}, claim=True, dispatch_claimed_at=now, **draft_values):
            logger.info("Dispatch of execution %s already claimed", execution.id)
            return False

        try:
            await self._sender.send(follow_up, subject, body)
        except SendError as e:
            await self._transition(
                execution,
                ExecutionStatus.FAILED,
                {current},
                execution_result=ExecutionResult.FAILED,
                executed_at=now,
                error_message=str(e),
            )
            return False

        await self._follow_ups.mark_sent(follow_up.id, now)
        await self._transition(
            execution,
            ExecutionStatus.SENT,
            {current},
            execution_result=ExecutionResult.SENT,
            executed_at=now,
            error_message=None,
        )
        logger.info("Automated follow-up sent for execution %s", execution.id)
        return True

    async def run_rule(self, rule: AutomationRule, now: datetime | None = None) -> dict[str, int]:
        """Evaluate one rule and execute it against every new match."""
        now = now or utcnow()
        counts = {"matched": 0, "executed": 0, "skipped_active": 0, "errors": 0}

        for follow_up in await self.find_matching_follow_ups(rule, now):
            counts["matched"] += 1
            try:
                execution = await self.create_execution(rule, follow_up, now)
                if execution is None:
                    counts["skipped_active"] += 1
                    continue
                await self.execute_automation(rule, follow_up, execution, now)
                counts["executed"] += 1
            except Exception:
                counts["errors"] += 1
                logger.exception("Automation failed for rule %s / follow-up %s", rule.id, follow_up.id)
        return counts

    # --- Approvals ---

    async def get_execution(
        self,
        execution_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> AutomationExecution | None:
        query = (
            select(AutomationExecution)
            .where(AutomationExecution.id == execution_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(AutomationExecution.user_id == user_id)
        try:
            result = await self._db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Error fetching execution %s: %s", execution_id, e)
            return None

    async def process_approval(
        self,
        execution_id: uuid.UUID,
        approver_id: uuid.UUID,
        approved: bool,
        comment: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Record one approver's decision.

        A rejection is terminal. With ``require_all`` the execution is approved
        once every listed approver's latest vote is an approval; otherwise a
        single approval suffices. Only the execution owner and the rule's listed
        approvers may vote. Returns False if the execution is not awaiting
        approval or the voter is not allowed.
        """
        now = now or utcnow()
        execution = await self.get_execution(execution_id)
        if execution is None or execution.status != ExecutionStatus.AWAITING_APPROVAL:
            logger.info("Execution %s is not awaiting approval", execution_id)
            return False

        rule = await self.get_rule(execution.rule_id)
        workflow = rule.workflow if rule else {}
        if not may_vote(execution, workflow, approver_id):
            logger.warning("User %s may not vote on execution %s", approver_id, execution_id)
            return False
        record = {
            "approver_id": str(approver_id),
            "approved": approved,
            "approved_at": now.isoformat(),
            "comment": comment,
        }
        approvals = [*(execution.approvals or []), record]

        if not approved:
            ok = await self._transition(
                execution,
                ExecutionStatus.REJECTED,
                {ExecutionStatus.AWAITING_APPROVAL},
                approvals=approvals,
                executed_at=now,
            )
            if ok:
                approvals_total.labels(decision="rejected").inc()
            return ok

        status = ExecutionStatus.APPROVED
        if workflow.get("require_all") and not has_consensus(approvals, workflow.get("approvers") or []):
            status = ExecutionStatus.AWAITING_APPROVAL

        ok = await self._transition(
            execution,
            status,
            {ExecutionStatus.AWAITING_APPROVAL},
            approvals=approvals,
        )
        if not ok:
            return False
        approvals_total.labels(decision="approved").inc()

        if status == ExecutionStatus.APPROVED and rule is not None and rule.settings.get("auto_send"):
            follow_up = await self._follow_ups.get_follow_up(execution.follow_up_id)
            if follow_up is not None:
                await self.send_automated_follow_up(execution, follow_up, now)
        return True

    async def is_eligible_approver(self, execution: AutomationExecution, user_id: uuid.UUID) -> bool:
        rule = await self.get_rule(execution.rule_id)
        return may_vote(execution, rule.workflow if rule else {}, user_id)

    async def send_approved_execution(
        self,
        execution_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> AutomationExecution | None:
        """Manually dispatch an approved execution. Returns None if it is not sendable."""
        execution = await self.get_execution(execution_id, user_id)
        if execution is None or execution.status != ExecutionStatus.APPROVED:
            return None
        follow_up = await self._follow_ups.get_follow_up(execution.follow_up_id)
        if follow_up is None:
            return None
        await self.send_automated_follow_up(execution, follow_up, now)
        return execution

    async def expire_approvals(self, now: datetime | None = None) -> dict[str, int]:
        """Apply each rule's fallback action to approvals past their deadline.

        Executions whose rule has no fallback stay awaiting approval.
        """
        now = now or utcnow()
        counts = {"expired": 0, "sent": 0, "skipped": 0, "escalated": 0, "left_waiting": 0, "errors": 0}
        try:
            result = await self._db.execute(
                select(AutomationExecution)
                .where(
                    AutomationExecution.status == ExecutionStatus.AWAITING_APPROVAL,
                    AutomationExecution.approval_deadline <= now,
                )
                .execution_options(populate_existing=True)
            )
            expired = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching expired approvals: %s", e)
            return counts

        for execution in expired:
            counts["expired"] += 1
            try:
                outcome = await self._apply_fallback(execution, now)
                counts[outcome] += 1
            except Exception:
                counts["errors"] += 1
                logger.exception("Approval expiry failed for execution %s", execution.id)
        return counts

    async def _apply_fallback(self, execution: AutomationExecution, now: datetime) -> str:
        rule = await self.get_rule(execution.rule_id)
        workflow = rule.workflow if rule else {}
        fallback = workflow.get("fallback_action")

        if fallback not in FALLBACK_ACTIONS:
            logger.info("Approval for execution %s expired with no fallback; leaving it waiting", execution.id)
            return "left_waiting"

        if fallback == "skip":
            await self._transition(
                execution,
                ExecutionStatus.SKIPPED,
                {ExecutionStatus.AWAITING_APPROVAL},
                execution_result=ExecutionResult.SKIPPED,
                executed_at=now,
                error_message="Approval timed out",
            )
            return "skipped"

        if fallback == "send":
            metadata = {**(execution.extra_data or {}), "approval_expired_at": now.isoformat()}
            if await self._transition(
                execution,
                ExecutionStatus.APPROVED,
                {ExecutionStatus.AWAITING_APPROVAL},
                extra_data=metadata,
            ):
                follow_up = await self._follow_ups.get_follow_up(execution.follow_up_id)
                if follow_up is not None:
                    await self.send_automated_follow_up(execution, follow_up, now)
            return "sent"

        timeout_hours = workflow.get("timeout_hours") or self._settings.default_approval_timeout_hours
        metadata = dict(execution.extra_data or {})
        metadata["escalation_count"] = metadata.get("escalation_count", 0) + 1
        metadata["escalated_at"] = now.isoformat()
        if await self._transition(
            execution,
            ExecutionStatus.AWAITING_APPROVAL,
            {ExecutionStatus.AWAITING_APPROVAL},
            approval_deadline=now + timedelta(hours=timeout_hours),
            extra_data=metadata,
        ):
            await self._follow_ups.create_reminder(
                follow_up_id=execution.follow_up_id,
                user_id=execution.user_id,
                reminder_type=ReminderType.NOTIFICATION,
                reminder_time=now,
                reminder_title=f"Approval overdue: {execution.draft_subject or 'automated follow-up'}",
                reminder_message=(
                    "An automated follow-up has been waiting for approval past its deadline."
                ),
            )
        return "escalated"

    # --- Responses ---

    async def record_response(self, follow_up_id: uuid.UUID, received_at: datetime) -> int:
        """Mark sent executions for a follow-up as answered. Returns how many changed."""
        try:
            result = await self._db.execute(
                select(AutomationExecution).where(
                    AutomationExecution.follow_up_id == follow_up_id,
                    AutomationExecution.status == ExecutionStatus.SENT,
                    AutomationExecution.response_received.is_(False),
                )
            )
            executions = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching executions for follow-up %s: %s", follow_up_id, e)
            return 0

        recorded = 0
        for execution in executions:
            hours = None
            if execution.executed_at is not None:
                hours = round((received_at - execution.executed_at).total_seconds() / 3600, 2)
            if await self._transition(
                execution,
                ExecutionStatus.SENT,
                {ExecutionStatus.SENT},
                response_received=True,
                response_received_at=received_at,
                response_time_hours=hours,
            ):
                recorded += 1
        return recorded

    # --- Reads ---

    async def get_executions(
        self,
        user_id: uuid.UUID,
        rule_id: uuid.UUID | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[AutomationExecution]:
        query = select(AutomationExecution).where(AutomationExecution.user_id == user_id)
        if rule_id is not None:
            query = query.where(AutomationExecution.rule_id == rule_id)
        if status is not None:
            query = query.where(AutomationExecution.status == status)
        query = query.order_by(AutomationExecution.triggered_at.desc()).limit(limit)
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching executions for user %s: %s", user_id, e)
            return []

    async def get_pending_approvals(self, user_id: uuid.UUID) -> list[AutomationExecution]:
        """Executions awaiting approval that the user owns or is listed to approve."""
        query = (
            select(AutomationExecution)
            .join(AutomationRule, AutomationRule.id == AutomationExecution.rule_id)
            .where(
                AutomationExecution.status == ExecutionStatus.AWAITING_APPROVAL,
                or_(
                    AutomationExecution.user_id == user_id,
                    AutomationRule.approval_workflow.contains({"approvers": [str(user_id)]}),
                ),
            )
            .order_by(AutomationExecution.approval_deadline.asc())
        )
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching pending approvals for user %s: %s", user_id, e)
            return []

    async def get_stats(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total_rules": 0,
            "active_rules": 0,
            "total_executions": 0,
            "pending_approvals": 0,
            "success_rate": 0.0,
            "avg_response_time_hours": 0.0,
        }
        rule_scope = [AutomationRule.user_id == user_id]
        if organization_id is not None:
            rule_scope.append(AutomationRule.organization_id == organization_id)
        execution_scope = [
            AutomationExecution.user_id == user_id,
            AutomationExecution.rule_id.in_(select(AutomationRule.id).where(*rule_scope)),
        ]

        try:
            rule_counts = await self._db.execute(
                select(AutomationRule.is_active, func.count())
                .where(*rule_scope)
                .group_by(AutomationRule.is_active)
            )
            execution_counts = await self._db.execute(
                select(AutomationExecution.status, func.count())
                .where(*execution_scope)
                .group_by(AutomationExecution.status)
            )
            avg_response = await self._db.execute(
                select(func.avg(AutomationExecution.response_time_hours)).where(
                    *execution_scope,
                    AutomationExecution.response_time_hours.is_not(None),
                )
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching automation stats for user %s: %s", user_id, e)
            return stats

        for is_active, count in rule_counts.all():
            stats["total_rules"] += count
            if is_active:
                stats["active_rules"] += count

        sent = 0
        for status, count in execution_counts.all():
            stats["total_executions"] += count
            status = ExecutionStatus(status)
            if status == ExecutionStatus.AWAITING_APPROVAL:
                stats["pending_approvals"] = count
            elif status == ExecutionStatus.SENT:
                sent = count

        if stats["total_executions"]:
            stats["success_rate"] = round(sent / stats["total_executions"] * 100, 1)
        stats["avg_response_time_hours"] = round(float(avg_response.scalar_one() or 0.0), 2)
        return stats


def has_consensus(approvals: list[dict], approvers: list) -> bool:
    """True when every listed approver's most recent vote is an approval."""
    latest: dict[str, bool] = {}
    for record in approvals:
        latest[str(record["approver_id"])] = bool(record["approved"])
    required = {str(a) for a in approvers}
    return all(latest.get(approver) for approver in required)


def may_vote(execution: AutomationExecution, workflow: dict, user_id: uuid.UUID) -> bool:
    """The execution owner and the workflow's listed approvers may vote."""
    if execution.user_id == user_id:
        return True
    return str(user_id) in {str(a) for a in workflow.get("approvers") or []}


def build_automation_service(
    db: AsyncSession,
    settings: Settings,
    follow_ups: FollowUpService | None = None,
) -> AutomationService:
    return AutomationService(
        db,
        settings,
        follow_ups=follow_ups or FollowUpService(db, settings),
        draft_generator=get_ai_service(settings),
        sender=get_follow_up_sender(settings),
    )
