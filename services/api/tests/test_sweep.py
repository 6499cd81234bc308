"""Tests for the periodic follow-up sweep."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.models.follow_up import FollowUp, FollowUpStatus
from app.models.follow_up_reminder import FollowUpReminder, ReminderType
from app.services.automation_service import AutomationService
from app.services.follow_up_service import FollowUpService
from app.services.reminder_notifier import ReminderNotifier
from app.services.sweep_service import FollowUpSweep, SweepReport

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)


def _make_follow_up(status=FollowUpStatus.PENDING, due_at=None, terminal=False):
    f = MagicMock(spec=FollowUp)
    f.id = uuid.uuid4()
    f.status = status
    f.follow_up_due_at = due_at or (NOW - timedelta(hours=2))
    f.is_terminal = terminal
    return f


def _make_reminder(reminder_type=ReminderType.DASHBOARD):
    r = MagicMock(spec=FollowUpReminder)
    r.id = uuid.uuid4()
    r.follow_up_id = uuid.uuid4()
    r.reminder_type = reminder_type
    return r


@pytest.fixture
def follow_ups():
    svc = AsyncMock(spec=FollowUpService)
    svc.get_status_refresh_candidates.return_value = []
    svc.get_pending_reminders.return_value = []
    svc.update_status.return_value = True
    svc.mark_reminder_sent.return_value = True
    svc.mark_reminder_failed.return_value = True
    svc.cancel_reminder.return_value = True
    return svc


@pytest.fixture
def automation():
    svc = AsyncMock(spec=AutomationService)
    svc.get_active_rules.return_value = []
    svc.expire_approvals.return_value = {"expired": 0, "errors": 0}
    return svc


@pytest.fixture
def notifier():
    n = AsyncMock(spec=ReminderNotifier)
    n.deliver.return_value = True
    return n


@pytest.fixture
def sweep(settings, follow_ups, automation, notifier):
    return FollowUpSweep(AsyncMock(), settings, follow_ups, automation, notifier)


class TestSweepStartup:
    @pytest.mark.asyncio
    async def test_unreachable_database_aborts(self, settings, follow_ups, automation, notifier):
        db = AsyncMock()
        db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        sweep = FollowUpSweep(db, settings, follow_ups, automation, notifier)

        with pytest.raises(OperationalError):
            await sweep.run(NOW)

        follow_ups.get_status_refresh_candidates.assert_not_awaited()
        automation.get_active_rules.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_pass(self, sweep):
        report = await sweep.run(NOW)

        assert isinstance(report, SweepReport)
        assert report.errors == 0
        assert report.as_dict()["started_at"] == NOW.isoformat()


class TestStatusRefresh:
    @pytest.mark.asyncio
    async def test_due_and_overdue(self, sweep, follow_ups):
        due = _make_follow_up(due_at=NOW - timedelta(hours=2))
        overdue = _make_follow_up(status=FollowUpStatus.DUE, due_at=NOW - timedelta(days=2))
        follow_ups.get_status_refresh_candidates.return_value = [due, overdue]

        report = await sweep.run(NOW)

        assert report.status_updates == {"due": 1, "overdue": 1}
        follow_ups.update_status.assert_any_await(due.id, FollowUpStatus.DUE, expected=[FollowUpStatus.PENDING])
        follow_ups.update_status.assert_any_await(
            overdue.id, FollowUpStatus.OVERDUE, expected=[FollowUpStatus.DUE]
        )

    @pytest.mark.asyncio
    async def test_unchanged_status_not_written(self, sweep, follow_ups):
        follow_ups.get_status_refresh_candidates.return_value = [
            _make_follow_up(status=FollowUpStatus.DUE, due_at=NOW - timedelta(hours=1))
        ]

        await sweep.run(NOW)

        follow_ups.update_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batch_sizes_are_independent(self, settings, follow_ups, automation, notifier):
        settings.status_batch_size = 250
        settings.reminder_batch_size = 40
        sweep = FollowUpSweep(AsyncMock(), settings, follow_ups, automation, notifier)

        await sweep.run(NOW)

        follow_ups.get_status_refresh_candidates.assert_awaited_once_with(NOW, 250)
        follow_ups.get_pending_reminders.assert_awaited_once_with(now=NOW, limit=40)

    @pytest.mark.asyncio
    async def test_lost_race_not_counted(self, sweep, follow_ups):
        follow_ups.get_status_refresh_candidates.return_value = [_make_follow_up()]
        follow_ups.update_status.return_value = False

        report = await sweep.run(NOW)

        assert report.status_updates == {"due": 0, "overdue": 0}


class TestReminderDispatch:
    @pytest.mark.asyncio
    async def test_delivered_reminder_marked_sent(self, sweep, follow_ups, notifier):
        reminder = _make_reminder()
        follow_ups.get_pending_reminders.return_value = [reminder]
        follow_ups.get_follow_up.return_value = _make_follow_up()

        report = await sweep.run(NOW)

        assert report.reminders["sent"] == 1
        notifier.deliver.assert_awaited_once_with(reminder)
        follow_ups.mark_reminder_sent.assert_awaited_once_with(reminder, NOW)

    @pytest.mark.asyncio
    async def test_failed_delivery_marked_failed(self, sweep, follow_ups, notifier):
        reminder = _make_reminder(ReminderType.NOTIFICATION)
        follow_ups.get_pending_reminders.return_value = [reminder]
        follow_ups.get_follow_up.return_value = _make_follow_up()
        notifier.deliver.return_value = False

        report = await sweep.run(NOW)

        assert report.reminders["failed"] == 1
        follow_ups.mark_reminder_failed.assert_awaited_once_with(reminder, "Delivery failed via notification")

    @pytest.mark.asyncio
    async def test_closed_follow_up_cancels_reminder(self, sweep, follow_ups, notifier):
        reminder = _make_reminder()
        follow_ups.get_pending_reminders.return_value = [reminder]
        follow_ups.get_follow_up.return_value = _make_follow_up(status=FollowUpStatus.COMPLETED, terminal=True)

        report = await sweep.run(NOW)

        assert report.reminders["cancelled"] == 1
        notifier.deliver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_bad_reminder_does_not_stop_the_rest(self, sweep, follow_ups, notifier):
        first, second = _make_reminder(), _make_reminder()
        follow_ups.get_pending_reminders.return_value = [first, second]
        follow_ups.get_follow_up.return_value = _make_follow_up()
        notifier.deliver.side_effect = [RuntimeError("webhook exploded"), True]

        report = await sweep.run(NOW)

        assert report.errors == 1
        assert report.reminders["sent"] == 1


class TestAutomationPhase:
    @pytest.mark.asyncio
    async def test_rule_counts_aggregated(self, sweep, automation):
        automation.get_active_rules.return_value = [MagicMock(id=uuid.uuid4()), MagicMock(id=uuid.uuid4())]
        automation.run_rule.side_effect = [
            {"matched": 2, "executed": 1, "skipped_active": 1, "errors": 0},
            RuntimeError("rule exploded"),
        ]

        report = await sweep.run(NOW)

        assert report.automation["rules"] == 2
        assert report.automation["matched"] == 2
        assert report.automation["executed"] == 1
        assert report.errors == 1

    @pytest.mark.asyncio
    async def test_expiry_runs_when_enabled(self, sweep, automation):
        automation.expire_approvals.return_value = {"expired": 1, "skipped": 1, "errors": 0}

        report = await sweep.run(NOW)

        automation.expire_approvals.assert_awaited_once_with(NOW)
        assert report.approvals["skipped"] == 1

    @pytest.mark.asyncio
    async def test_expiry_disabled(self, settings, follow_ups, automation, notifier):
        settings.approval_expiry_enabled = False
        sweep = FollowUpSweep(AsyncMock(), settings, follow_ups, automation, notifier)

        await sweep.run(NOW)

        automation.expire_approvals.assert_not_awaited()
