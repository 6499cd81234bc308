"""Periodic follow-up sweep: status derivation, reminders, automation, approval expiry."""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.metrics import reminders_processed_total, sweep_duration_seconds
from app.models.base import utcnow
from app.models.follow_up import FollowUpStatus
from app.services.automation_service import AutomationService, build_automation_service
from app.services.follow_up_service import FollowUpService, derive_status
from app.services.reminder_notifier import ReminderNotifier, get_reminder_notifier

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    status_updates: dict[str, int] = field(default_factory=lambda: {"due": 0, "overdue": 0})
    reminders: dict[str, int] = field(default_factory=lambda: {"sent": 0, "failed": 0, "cancelled": 0})
    automation: dict[str, int] = field(
        default_factory=lambda: {"rules": 0, "matched": 0, "executed": 0, "skipped_active": 0, "errors": 0}
    )
    approvals: dict[str, int] = field(default_factory=dict)
    errors: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class FollowUpSweep:
    """One pass over all follow-ups.

    Per-item failures are logged and counted; they never stop the pass. A
    database that is unreachable at the start aborts the pass with the
    original error.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        follow_ups: FollowUpService,
        automation: AutomationService,
        notifier: ReminderNotifier,
    ) -> None:
        self._db = db
        self._settings = settings
        self._follow_ups = follow_ups
        self._automation = automation
        self._notifier = notifier

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        start = time.monotonic()

        await self._db.execute(select(1))

        report = SweepReport(started_at=now)
        await self._refresh_statuses(now, report)
        await self._dispatch_reminders(now, report)
        await self._run_automation(now, report)
        if self._settings.approval_expiry_enabled:
            report.approvals = await self._automation.expire_approvals(now)
            report.errors += report.approvals.get("errors", 0)

        report.duration_seconds = round(time.monotonic() - start, 3)
        sweep_duration_seconds.observe(report.duration_seconds)
        logger.info(
            "Follow-up sweep finished in %.2fs: statuses=%s reminders=%s automation=%s approvals=%s errors=%d",
            report.duration_seconds,
            report.status_updates,
            report.reminders,
            report.automation,
            report.approvals,
            report.errors,
        )
        return report

    async def _refresh_statuses(self, now: datetime, report: SweepReport) -> None:
        threshold = timedelta(hours=self._settings.overdue_threshold_hours)
        candidates = await self._follow_ups.get_status_refresh_candidates(now, self._settings.status_batch_size)

        for follow_up in candidates:
            current = FollowUpStatus(follow_up.status)
            target = derive_status(follow_up, now, threshold)
            if target == current:
                continue
            try:
                if await self._follow_ups.update_status(follow_up.id, target, expected=[current]):
                    report.status_updates[target.value] += 1
            except Exception:
                report.errors += 1
                logger.exception("Status refresh failed for follow-up %s", follow_up.id)

    async def _dispatch_reminders(self, now: datetime, report: SweepReport) -> None:
        reminders = await self._follow_ups.get_pending_reminders(now=now, limit=self._settings.reminder_batch_size)

        for reminder in reminders:
            try:
                follow_up = await self._follow_ups.get_follow_up(reminder.follow_up_id)
                if follow_up is None or follow_up.is_terminal:
                    if await self._follow_ups.cancel_reminder(reminder):
                        report.reminders["cancelled"] += 1
                        reminders_processed_total.labels(status="cancelled").inc()
                    continue

                if await self._notifier.deliver(reminder):
                    if await self._follow_ups.mark_reminder_sent(reminder, now):
                        report.reminders["sent"] += 1
                        reminders_processed_total.labels(status="sent").inc()
                else:
                    reminder_type = getattr(reminder.reminder_type, "value", reminder.reminder_type)
                    if await self._follow_ups.mark_reminder_failed(reminder, f"Delivery failed via {reminder_type}"):
                        report.reminders["failed"] += 1
                        reminders_processed_total.labels(status="failed").inc()
            except Exception:
                report.errors += 1
                logger.exception("Reminder dispatch failed for reminder %s", reminder.id)

    async def _run_automation(self, now: datetime, report: SweepReport) -> None:
        # Rules created during the pass wait for the next one
        rules = await self._automation.get_active_rules()

        for rule in rules:
            report.automation["rules"] += 1
            try:
                counts = await self._automation.run_rule(rule, now)
            except Exception:
                report.errors += 1
                logger.exception("Automation rule %s failed", rule.id)
                continue
            for key, value in counts.items():
                report.automation[key] = report.automation.get(key, 0) + value
            report.errors += counts.get("errors", 0)


def build_sweep(db: AsyncSession, settings: Settings) -> FollowUpSweep:
    follow_ups = FollowUpService(db, settings)
    return FollowUpSweep(
        db,
        settings,
        follow_ups=follow_ups,
        automation=build_automation_service(db, settings, follow_ups),
        notifier=get_reminder_notifier(settings),
    )
