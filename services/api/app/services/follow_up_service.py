"""Follow-up lifecycle: tracking, status transitions, snoozing and reminders."""

import logging
import re
import uuid
from collections.abc import Collection
from datetime import datetime, timedelta
from email.utils import parseaddr
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.metrics import follow_ups_created_total
from app.models.base import utcnow
from app.models.follow_up import (
    OPEN_FOLLOW_UP_STATUSES,
    FollowUp,
    FollowUpPriority,
    FollowUpStatus,
    FollowUpType,
)
from app.models.follow_up_reminder import FollowUpReminder, ReminderStatus, ReminderType

logger = logging.getLogger(__name__)

AUTO_REPLY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(re:|fwd?:|fw:)",
        r"out of office",
        r"automatic reply",
        r"auto.?reply",
        r"vacation",
        r"away",
        r"unsubscribe",
    )
]

BULK_UPDATABLE_FIELDS = frozenset({"status", "priority", "context_summary", "follow_up_reason"})


def is_auto_reply_subject(subject: str) -> bool:
    """Check if a subject line looks like a reply, forward or auto-response."""
    return any(p.search(subject or "") for p in AUTO_REPLY_PATTERNS)


def compute_due_at(sent_at: datetime, follow_up_days: int) -> datetime:
    return sent_at + timedelta(days=follow_up_days)


def derive_status(
    follow_up: FollowUp,
    now: datetime,
    overdue_threshold: timedelta,
) -> FollowUpStatus:
    """Status implied by the clock for an open follow-up.

    Terminal and not-yet-due follow-ups keep their stored status. Derived
    statuses only move forward (pending -> due -> overdue).
    """
    status = FollowUpStatus(follow_up.status)
    if status not in OPEN_FOLLOW_UP_STATUSES or follow_up.follow_up_due_at > now:
        return status
    if now - follow_up.follow_up_due_at >= overdue_threshold or status == FollowUpStatus.OVERDUE:
        return FollowUpStatus.OVERDUE
    return FollowUpStatus.DUE


class FollowUpService:
    """Creates and mutates follow-ups and their reminders.

    Every state change is a conditional UPDATE on the expected prior status,
    committed on its own. A write that matches no row means another actor got
    there first and is reported as ``False``, not raised.
    """

    def __init__(self, db: AsyncSession, settings: Settings) -> None:
        self._db = db
        self._settings = settings

    # --- Writes ---

    async def _write(self, stmt, description: str) -> bool:
        try:
            result = await self._db.execute(stmt)
            if result.rowcount == 0:
                await self._db.rollback()
                logger.info("No row changed for %s (missing, terminal or already handled)", description)
                return False
            await self._db.commit()
            return True
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to persist %s: %s", description, e)
            return False

    async def create_follow_up(
        self,
        *,
        user_id: uuid.UUID,
        email_id: str,
        original_sent_at: datetime,
        original_subject: str,
        original_recipients: list[str],
        organization_id: uuid.UUID | None = None,
        thread_id: str | None = None,
        follow_up_days: int | None = None,
        priority: FollowUpPriority = FollowUpPriority.MEDIUM,
        follow_up_type: FollowUpType = FollowUpType.MANUAL,
        context_summary: str | None = None,
        follow_up_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FollowUp | None:
        """Create a follow-up plus its dashboard reminder at the due date.

        Returns None for auto-reply subjects or when the insert fails.
        """
        if is_auto_reply_subject(original_subject):
            logger.info("Not tracking auto-reply subject for email %s", email_id)
            return None

        days = follow_up_days or self._settings.default_follow_up_days
        due_at = compute_due_at(original_sent_at, days)

        follow_up = FollowUp(
            id=uuid.uuid4(),
            user_id=user_id,
            organization_id=organization_id,
            email_id=email_id,
            thread_id=thread_id,
            original_sent_at=original_sent_at,
            follow_up_due_at=due_at,
            status=FollowUpStatus.PENDING,
            follow_up_type=follow_up_type,
            priority=priority,
            original_subject=original_subject,
            original_recipients=list(original_recipients),
            context_summary=context_summary,
            follow_up_reason=follow_up_reason,
            ai_draft_approved=False,
            reminder_count=0,
            extra_data=metadata or {},
        )
        reminder = FollowUpReminder(
            id=uuid.uuid4(),
            follow_up_id=follow_up.id,
            user_id=user_id,
            reminder_type=ReminderType.DASHBOARD,
            reminder_time=due_at,
            status=ReminderStatus.PENDING,
            reminder_title=f"Follow-up due: {original_subject}",
            reminder_message=(
                f'No response received to your email "{original_subject}". '
                "Consider sending a follow-up."
            ),
        )

        try:
            self._db.add(follow_up)
            self._db.add(reminder)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to create follow-up for email %s: %s", email_id, e)
            return None

        follow_ups_created_total.labels(type=FollowUpType(follow_up_type).value).inc()
        logger.info("Created follow-up %s for email %s due %s", follow_up.id, email_id, due_at.isoformat())
        return follow_up

    async def track_sent_email(
        self,
        *,
        user_id: uuid.UUID,
        email_id: str,
        subject: str,
        recipients: list[str],
        sent_at: datetime,
        organization_id: uuid.UUID | None = None,
        thread_id: str | None = None,
        auto_follow_up: bool = True,
        follow_up_days: int | None = None,
        priority: FollowUpPriority = FollowUpPriority.MEDIUM,
    ) -> FollowUp | None:
        """Send-tracking hook: called for every outgoing message."""
        if not (auto_follow_up and self._settings.auto_tracking_enabled):
            return None

        return await self.create_follow_up(
            user_id=user_id,
            organization_id=organization_id,
            email_id=email_id,
            thread_id=thread_id,
            original_sent_at=sent_at,
            original_subject=subject,
            original_recipients=recipients,
            follow_up_days=follow_up_days,
            priority=priority,
            follow_up_type=FollowUpType.AUTO,
            context_summary="Automatically tracked sent email",
            follow_up_reason="No response received",
            metadata={
                "auto_tracked": True,
                "tracking_enabled_at": utcnow().isoformat(),
            },
        )

    async def update_status(
        self,
        follow_up_id: uuid.UUID,
        status: FollowUpStatus,
        expected: Collection[FollowUpStatus] = OPEN_FOLLOW_UP_STATUSES,
        **values: Any,
    ) -> bool:
        """Move a follow-up to ``status`` only if it is still in ``expected``."""
        stmt = (
            update(FollowUp)
            .where(FollowUp.id == follow_up_id, FollowUp.status.in_(list(expected)))
            .values(status=status, **values)
        )
        return await self._write(stmt, f"follow-up {follow_up_id} -> {status.value}")

    async def mark_completed(self, follow_up_id: uuid.UUID, responded_at: datetime | None = None) -> bool:
        """Complete a follow-up because the recipient responded."""
        return await self.update_status(
            follow_up_id,
            FollowUpStatus.COMPLETED,
            response_received_at=responded_at or utcnow(),
        )

    async def mark_sent(self, follow_up_id: uuid.UUID, sent_at: datetime | None = None) -> bool:
        """Complete a follow-up because a follow-up message went out."""
        return await self.update_status(
            follow_up_id,
            FollowUpStatus.COMPLETED,
            follow_up_sent_at=sent_at or utcnow(),
        )

    async def cancel_follow_up(self, follow_up_id: uuid.UUID) -> bool:
        return await self.update_status(follow_up_id, FollowUpStatus.CANCELLED)

    async def store_ai_draft(
        self,
        follow_up_id: uuid.UUID,
        subject: str,
        body: str,
        generated_at: datetime | None = None,
    ) -> bool:
        """Attach a generated draft to an open follow-up for the user to review."""
        stmt = (
            update(FollowUp)
            .where(
                FollowUp.id == follow_up_id,
                FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
            )
            .values(
                ai_draft_subject=subject,
                ai_draft_content=body,
                ai_draft_generated_at=generated_at or utcnow(),
                ai_draft_approved=False,
            )
        )
        return await self._write(stmt, f"draft for follow-up {follow_up_id}")

    async def snooze_follow_up(self, follow_up_id: uuid.UUID, snooze_until: datetime) -> bool:
        """Push the due date out and reset reminder bookkeeping.

        Pending reminders move with the due date. Terminal follow-ups are
        left untouched and yield False.
        """
        try:
            result = await self._db.execute(
                update(FollowUp)
                .where(
                    FollowUp.id == follow_up_id,
                    FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
                )
                .values(
                    status=FollowUpStatus.PENDING,
                    follow_up_due_at=snooze_until,
                    reminder_count=0,
                    last_reminder_at=None,
                )
            )
            if result.rowcount == 0:
                await self._db.rollback()
                logger.info("Snooze refused for follow-up %s (missing or terminal)", follow_up_id)
                return False
            await self._db.execute(
                update(FollowUpReminder)
                .where(
                    FollowUpReminder.follow_up_id == follow_up_id,
                    FollowUpReminder.status == ReminderStatus.PENDING,
                )
                .values(reminder_time=snooze_until)
            )
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to snooze follow-up %s: %s", follow_up_id, e)
            return False

        logger.info("Snoozed follow-up %s until %s", follow_up_id, snooze_until.isoformat())
        return True

    async def bulk_update(
        self,
        follow_up_ids: list[uuid.UUID],
        patch: dict[str, Any],
        user_id: uuid.UUID | None = None,
    ) -> int | None:
        """Apply the same patch to many open follow-ups.

        Each record is its own conditional write, so a retry after a partial
        failure reapplies cleanly. Returns the number of records changed, or
        None if the batch failed.
        """
        disallowed = set(patch) - BULK_UPDATABLE_FIELDS
        if disallowed:
            raise ValueError(f"Fields not updatable in bulk: {sorted(disallowed)}")

        updated = 0
        try:
            for follow_up_id in follow_up_ids:
                stmt = update(FollowUp).where(
                    FollowUp.id == follow_up_id,
                    FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
                )
                if user_id is not None:
                    stmt = stmt.where(FollowUp.user_id == user_id)
                result = await self._db.execute(stmt.values(**patch))
                await self._db.commit()
                updated += result.rowcount
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Bulk update failed after %d of %d follow-ups: %s", updated, len(follow_up_ids), e)
            return None
        return updated

    # --- Reads (never raise; degrade to empty results) ---

    async def get_follow_up(
        self,
        follow_up_id: uuid.UUID,
        user_id: uuid.UUID | None = None,
    ) -> FollowUp | None:
        query = (
            select(FollowUp)
            .where(FollowUp.id == follow_up_id)
            .execution_options(populate_existing=True)
        )
        if user_id is not None:
            query = query.where(FollowUp.user_id == user_id)
        try:
            result = await self._db.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-up %s: %s", follow_up_id, e)
            return None

    async def get_follow_ups(
        self,
        user_id: uuid.UUID,
        statuses: Collection[FollowUpStatus] | None = None,
        priorities: Collection[FollowUpPriority] | None = None,
        organization_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[FollowUp]:
        """List a user's follow-ups, soonest due first."""
        query = select(FollowUp).where(FollowUp.user_id == user_id)
        if statuses:
            query = query.where(FollowUp.status.in_(list(statuses)))
        if priorities:
            query = query.where(FollowUp.priority.in_(list(priorities)))
        if organization_id is not None:
            query = query.where(FollowUp.organization_id == organization_id)
        query = query.order_by(FollowUp.follow_up_due_at.asc())
        if limit:
            query = query.limit(limit)

        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-ups for user %s: %s", user_id, e)
            return []

    async def get_due_follow_ups(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID | None = None,
    ) -> list[FollowUp]:
        return await self.get_follow_ups(
            user_id,
            statuses=[FollowUpStatus.DUE, FollowUpStatus.OVERDUE],
            organization_id=organization_id,
        )

    async def get_follow_ups_by_email_id(
        self,
        email_id: str,
        user_id: uuid.UUID | None = None,
    ) -> list[FollowUp]:
        query = select(FollowUp).where(FollowUp.email_id == email_id)
        if user_id is not None:
            query = query.where(FollowUp.user_id == user_id)
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-ups for email %s: %s", email_id, e)
            return []

    async def get_status_refresh_candidates(self, now: datetime, limit: int = 1000) -> list[FollowUp]:
        """Pending/due follow-ups whose due date has passed."""
        query = (
            select(FollowUp)
            .where(
                FollowUp.status.in_([FollowUpStatus.PENDING, FollowUpStatus.DUE]),
                FollowUp.follow_up_due_at <= now,
            )
            .order_by(FollowUp.follow_up_due_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-ups for status refresh: %s", e)
            return []

    async def get_follow_up_stats(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total_follow_ups": 0,
            "pending_follow_ups": 0,
            "due_follow_ups": 0,
            "overdue_follow_ups": 0,
            "completed_follow_ups": 0,
            "response_rate": 0.0,
        }
        scope = [FollowUp.user_id == user_id]
        if organization_id is not None:
            scope.append(FollowUp.organization_id == organization_id)

        try:
            counts = await self._db.execute(
                select(FollowUp.status, func.count()).where(*scope).group_by(FollowUp.status)
            )
            responded = await self._db.execute(
                select(func.count()).where(*scope, FollowUp.response_received_at.is_not(None))
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching follow-up stats for user %s: %s", user_id, e)
            return stats

        for status, count in counts.all():
            stats["total_follow_ups"] += count
            key = f"{FollowUpStatus(status).value}_follow_ups"
            if key in stats:
                stats[key] = count

        responded_count = responded.scalar_one() or 0
        if stats["total_follow_ups"]:
            stats["response_rate"] = round(responded_count / stats["total_follow_ups"] * 100, 1)
        return stats

    # --- Response detection ---

    async def process_incoming_email(
        self,
        user_id: uuid.UUID,
        thread_id: str,
        from_addr: str,
        received_at: datetime,
    ) -> list[uuid.UUID]:
        """Complete open follow-ups on ``thread_id`` answered by one of their recipients.

        Returns the ids of follow-ups completed by this message.
        """
        sender = parseaddr(from_addr)[1].lower() or from_addr.strip().lower()
        try:
            result = await self._db.execute(
                select(FollowUp).where(
                    FollowUp.user_id == user_id,
                    FollowUp.thread_id == thread_id,
                    FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
                )
            )
            candidates = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error checking follow-ups for thread %s: %s", thread_id, e)
            return []

        completed = []
        for follow_up in candidates:
            recipients = {parseaddr(r)[1].lower() or r.lower() for r in follow_up.original_recipients or []}
            if sender not in recipients:
                continue
            if await self.mark_completed(follow_up.id, received_at):
                completed.append(follow_up.id)
                logger.info("Response detected for follow-up %s", follow_up.id)
        return completed

    # --- Reminders ---

    async def create_reminder(
        self,
        *,
        follow_up_id: uuid.UUID,
        user_id: uuid.UUID,
        reminder_type: ReminderType,
        reminder_time: datetime,
        reminder_title: str,
        reminder_message: str | None = None,
    ) -> FollowUpReminder | None:
        reminder = FollowUpReminder(
            id=uuid.uuid4(),
            follow_up_id=follow_up_id,
            user_id=user_id,
            reminder_type=reminder_type,
            reminder_time=reminder_time,
            status=ReminderStatus.PENDING,
            reminder_title=reminder_title[:500],
            reminder_message=reminder_message,
        )
        try:
            self._db.add(reminder)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to create reminder for follow-up %s: %s", follow_up_id, e)
            return None
        return reminder

    async def get_pending_reminders(
        self,
        user_id: uuid.UUID | None = None,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[FollowUpReminder]:
        """Pending reminders whose time has come, oldest first."""
        query = select(FollowUpReminder).where(
            FollowUpReminder.status == ReminderStatus.PENDING,
            FollowUpReminder.reminder_time <= (now or utcnow()),
        )
        if user_id is not None:
            query = query.where(FollowUpReminder.user_id == user_id)
        query = query.order_by(FollowUpReminder.reminder_time.asc())
        if limit:
            query = query.limit(limit)
        try:
            result = await self._db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Error fetching pending reminders: %s", e)
            return []

    async def mark_reminder_sent(self, reminder: FollowUpReminder, sent_at: datetime | None = None) -> bool:
        """Mark a reminder sent and count it against its follow-up."""
        sent_at = sent_at or utcnow()
        try:
            result = await self._db.execute(
                update(FollowUpReminder)
                .where(
                    FollowUpReminder.id == reminder.id,
                    FollowUpReminder.status == ReminderStatus.PENDING,
                )
                .values(status=ReminderStatus.SENT, sent_at=sent_at, error_message=None)
            )
            if result.rowcount == 0:
                await self._db.rollback()
                return False
            await self._db.execute(
                update(FollowUp)
                .where(
                    FollowUp.id == reminder.follow_up_id,
                    FollowUp.status.in_(list(OPEN_FOLLOW_UP_STATUSES)),
                )
                .values(reminder_count=FollowUp.reminder_count + 1, last_reminder_at=sent_at)
            )
            await self._db.commit()
            return True
        except SQLAlchemyError as e:
            await self._db.rollback()
            logger.error("Failed to mark reminder %s sent: %s", reminder.id, e)
            return False

    async def mark_reminder_failed(self, reminder: FollowUpReminder, error_message: str) -> bool:
        stmt = (
            update(FollowUpReminder)
            .where(
                FollowUpReminder.id == reminder.id,
                FollowUpReminder.status == ReminderStatus.PENDING,
            )
            .values(status=ReminderStatus.FAILED, error_message=error_message[:2000])
        )
        return await self._write(stmt, f"reminder {reminder.id} -> failed")

    async def cancel_reminder(self, reminder: FollowUpReminder) -> bool:
        stmt = (
            update(FollowUpReminder)
            .where(
                FollowUpReminder.id == reminder.id,
                FollowUpReminder.status == ReminderStatus.PENDING,
            )
            .values(status=ReminderStatus.CANCELLED)
        )
        return await self._write(stmt, f"reminder {reminder.id} -> cancelled")
