"""Unit tests for the follow-up lifecycle service.

Covers:
- Auto-reply filtering and due-date computation
- Forward-only status derivation
- Creation, send tracking, status transitions, snooze and bulk updates
- Response detection on incoming mail
- Reminder bookkeeping
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.metrics import follow_ups_created_total
from app.models.follow_up import FollowUp, FollowUpPriority, FollowUpStatus, FollowUpType
from app.models.follow_up_reminder import FollowUpReminder, ReminderStatus, ReminderType
from app.services.follow_up_service import (
    FollowUpService,
    compute_due_at,
    derive_status,
    is_auto_reply_subject,
)

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)
THRESHOLD = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_db():
    db = AsyncMock()
    db.add = MagicMock()
    return db


def _write_result(rowcount=1):
    result = MagicMock()
    result.rowcount = rowcount
    return result


def _scalars_result(items):
    result = MagicMock()
    result.scalars.return_value.all.return_value = items
    return result


def _make_follow_up(
    *,
    status=FollowUpStatus.PENDING,
    due_at=None,
    recipients=None,
    thread_id="thread_001",
    user_id=None,
):
    f = MagicMock(spec=FollowUp)
    f.id = uuid.uuid4()
    f.user_id = user_id or uuid.uuid4()
    f.status = status
    f.thread_id = thread_id
    f.follow_up_due_at = due_at or (NOW - timedelta(hours=1))
    f.original_recipients = recipients if recipients is not None else ["alice@acme.com"]
    return f


def _make_reminder(follow_up_id=None):
    r = MagicMock(spec=FollowUpReminder)
    r.id = uuid.uuid4()
    r.follow_up_id = follow_up_id or uuid.uuid4()
    r.status = ReminderStatus.PENDING
    r.reminder_type = ReminderType.DASHBOARD
    return r


def _db_error():
    return OperationalError("UPDATE follow_ups", {}, Exception("connection refused"))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestAutoReplySubjects:
    @pytest.mark.parametrize(
        "subject",
        ["Re: Proposal", "FWD: deck", "Fw: notes", "Out of Office: back Monday", "Automatic reply: hi", "Auto-Reply"],
    )
    def test_detected(self, subject):
        assert is_auto_reply_subject(subject) is True

    @pytest.mark.parametrize("subject", ["Proposal for Q3", "Contract draft", ""])
    def test_regular_subjects(self, subject):
        assert is_auto_reply_subject(subject) is False


class TestComputeDueAt:
    def test_adds_days(self):
        assert compute_due_at(NOW, 3) == NOW + timedelta(days=3)


class TestDeriveStatus:
    def test_not_yet_due_keeps_status(self):
        f = _make_follow_up(due_at=NOW + timedelta(hours=2))
        assert derive_status(f, NOW, THRESHOLD) == FollowUpStatus.PENDING

    def test_pending_past_due_becomes_due(self):
        f = _make_follow_up(due_at=NOW - timedelta(hours=2))
        assert derive_status(f, NOW, THRESHOLD) == FollowUpStatus.DUE

    def test_past_threshold_becomes_overdue(self):
        f = _make_follow_up(status=FollowUpStatus.DUE, due_at=NOW - timedelta(hours=24))
        assert derive_status(f, NOW, THRESHOLD) == FollowUpStatus.OVERDUE

    def test_pending_skips_straight_to_overdue(self):
        f = _make_follow_up(due_at=NOW - timedelta(days=3))
        assert derive_status(f, NOW, THRESHOLD) == FollowUpStatus.OVERDUE

    def test_overdue_never_moves_back(self):
        f = _make_follow_up(status=FollowUpStatus.OVERDUE, due_at=NOW - timedelta(hours=1))
        assert derive_status(f, NOW, THRESHOLD) == FollowUpStatus.OVERDUE

    @pytest.mark.parametrize("status", [FollowUpStatus.COMPLETED, FollowUpStatus.CANCELLED])
    def test_terminal_untouched(self, status):
        f = _make_follow_up(status=status, due_at=NOW - timedelta(days=10))
        assert derive_status(f, NOW, THRESHOLD) == status


# ---------------------------------------------------------------------------
# Creation and tracking
# ---------------------------------------------------------------------------

class TestCreateFollowUp:
    @pytest.mark.asyncio
    async def test_creates_follow_up_and_dashboard_reminder(self, settings, sample_user_id):
        db = _make_db()
        service = FollowUpService(db, settings)
        before = follow_ups_created_total.labels(type="manual")._value.get()

        follow_up = await service.create_follow_up(
            user_id=sample_user_id,
            email_id="msg_001",
            thread_id="thread_001",
            original_sent_at=NOW,
            original_subject="Proposal",
            original_recipients=["alice@acme.com"],
        )

        assert follow_up is not None
        assert follow_up.status == FollowUpStatus.PENDING
        assert follow_up.follow_up_due_at == NOW + timedelta(days=3)
        assert follow_up.reminder_count == 0
        assert follow_up.ai_draft_approved is False

        added = [c.args[0] for c in db.add.call_args_list]
        assert len(added) == 2
        reminder = added[1]
        assert isinstance(reminder, FollowUpReminder)
        assert reminder.follow_up_id == follow_up.id
        assert reminder.reminder_type == ReminderType.DASHBOARD
        assert reminder.reminder_time == follow_up.follow_up_due_at
        assert reminder.reminder_title == "Follow-up due: Proposal"
        db.commit.assert_awaited_once()

        after = follow_ups_created_total.labels(type="manual")._value.get()
        assert after == before + 1

    @pytest.mark.asyncio
    async def test_explicit_follow_up_days(self, settings, sample_user_id):
        service = FollowUpService(_make_db(), settings)

        follow_up = await service.create_follow_up(
            user_id=sample_user_id,
            email_id="msg_001",
            original_sent_at=NOW,
            original_subject="Proposal",
            original_recipients=["alice@acme.com"],
            follow_up_days=7,
            priority=FollowUpPriority.URGENT,
        )

        assert follow_up.follow_up_due_at == NOW + timedelta(days=7)
        assert follow_up.priority == FollowUpPriority.URGENT

    @pytest.mark.asyncio
    async def test_auto_reply_not_tracked(self, settings, sample_user_id):
        db = _make_db()
        service = FollowUpService(db, settings)

        follow_up = await service.create_follow_up(
            user_id=sample_user_id,
            email_id="msg_001",
            original_sent_at=NOW,
            original_subject="Re: Proposal",
            original_recipients=["alice@acme.com"],
        )

        assert follow_up is None
        db.add.assert_not_called()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back(self, settings, sample_user_id):
        db = _make_db()
        db.commit.side_effect = _db_error()
        service = FollowUpService(db, settings)

        follow_up = await service.create_follow_up(
            user_id=sample_user_id,
            email_id="msg_001",
            original_sent_at=NOW,
            original_subject="Proposal",
            original_recipients=["alice@acme.com"],
        )

        assert follow_up is None
        db.rollback.assert_awaited_once()


class TestTrackSentEmail:
    @pytest.mark.asyncio
    async def test_tracks_as_auto_follow_up(self, settings, sample_user_id):
        service = FollowUpService(_make_db(), settings)

        follow_up = await service.track_sent_email(
            user_id=sample_user_id,
            email_id="msg_001",
            subject="Proposal",
            recipients=["alice@acme.com"],
            sent_at=NOW,
        )

        assert follow_up.follow_up_type == FollowUpType.AUTO
        assert follow_up.context_summary == "Automatically tracked sent email"
        assert follow_up.follow_up_reason == "No response received"
        assert follow_up.extra_data["auto_tracked"] is True
        assert "tracking_enabled_at" in follow_up.extra_data

    @pytest.mark.asyncio
    async def test_opt_out_per_email(self, settings, sample_user_id):
        db = _make_db()
        service = FollowUpService(db, settings)

        follow_up = await service.track_sent_email(
            user_id=sample_user_id,
            email_id="msg_001",
            subject="Proposal",
            recipients=["alice@acme.com"],
            sent_at=NOW,
            auto_follow_up=False,
        )

        assert follow_up is None
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_globally(self, settings, sample_user_id):
        settings.auto_tracking_enabled = False
        db = _make_db()
        service = FollowUpService(db, settings)

        follow_up = await service.track_sent_email(
            user_id=sample_user_id,
            email_id="msg_001",
            subject="Proposal",
            recipients=["alice@acme.com"],
            sent_at=NOW,
        )

        assert follow_up is None
        db.add.assert_not_called()


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_update_status_commits(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(1))
        service = FollowUpService(db, settings)

        assert await service.update_status(uuid.uuid4(), FollowUpStatus.DUE) is True
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_row_changed_returns_false(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(0))
        service = FollowUpService(db, settings)

        assert await service.mark_completed(uuid.uuid4(), NOW) is False
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_database_error_returns_false(self, settings):
        db = _make_db()
        db.execute = AsyncMock(side_effect=_db_error())
        service = FollowUpService(db, settings)

        assert await service.cancel_follow_up(uuid.uuid4()) is False
        db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mark_sent_and_draft_storage(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(1))
        service = FollowUpService(db, settings)

        assert await service.mark_sent(uuid.uuid4(), NOW) is True
        assert await service.store_ai_draft(uuid.uuid4(), "Checking in", "Hi Alice", NOW) is True
        assert db.execute.await_count == 2


class TestSnooze:
    @pytest.mark.asyncio
    async def test_snooze_moves_follow_up_and_reminders(self, settings):
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_write_result(1), _write_result(2)])
        service = FollowUpService(db, settings)

        assert await service.snooze_follow_up(uuid.uuid4(), NOW + timedelta(days=2)) is True
        assert db.execute.await_count == 2
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_follow_up_not_snoozed(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(0))
        service = FollowUpService(db, settings)

        assert await service.snooze_follow_up(uuid.uuid4(), NOW + timedelta(days=2)) is False
        assert db.execute.await_count == 1
        db.rollback.assert_awaited_once()


class TestBulkUpdate:
    @pytest.mark.asyncio
    async def test_counts_changed_rows(self, settings, sample_user_id):
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_write_result(1), _write_result(0), _write_result(1)])
        service = FollowUpService(db, settings)

        ids = [uuid.uuid4() for _ in range(3)]
        updated = await service.bulk_update(ids, {"priority": FollowUpPriority.HIGH}, user_id=sample_user_id)

        assert updated == 2
        assert db.commit.await_count == 3

    @pytest.mark.asyncio
    async def test_disallowed_field_rejected(self, settings):
        db = _make_db()
        service = FollowUpService(db, settings)

        with pytest.raises(ValueError, match="follow_up_due_at"):
            await service.bulk_update([uuid.uuid4()], {"follow_up_due_at": NOW})
        db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, settings):
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_write_result(1), _db_error()])
        service = FollowUpService(db, settings)

        updated = await service.bulk_update([uuid.uuid4(), uuid.uuid4()], {"context_summary": "x"})

        assert updated is None
        db.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestReads:
    @pytest.mark.asyncio
    async def test_get_follow_ups_degrades_to_empty(self, settings, sample_user_id):
        db = _make_db()
        db.execute = AsyncMock(side_effect=_db_error())
        service = FollowUpService(db, settings)

        assert await service.get_follow_ups(sample_user_id) == []

    @pytest.mark.asyncio
    async def test_get_follow_up(self, settings, sample_user_id):
        follow_up = _make_follow_up(user_id=sample_user_id)
        result = MagicMock()
        result.scalar_one_or_none.return_value = follow_up
        db = _make_db()
        db.execute = AsyncMock(return_value=result)
        service = FollowUpService(db, settings)

        assert await service.get_follow_up(follow_up.id, sample_user_id) is follow_up

    @pytest.mark.asyncio
    async def test_stats(self, settings, sample_user_id):
        counts = MagicMock()
        counts.all.return_value = [
            (FollowUpStatus.PENDING, 1),
            (FollowUpStatus.OVERDUE, 1),
            (FollowUpStatus.COMPLETED, 2),
        ]
        responded = MagicMock()
        responded.scalar_one.return_value = 1
        db = _make_db()
        db.execute = AsyncMock(side_effect=[counts, responded])
        service = FollowUpService(db, settings)

        stats = await service.get_follow_up_stats(sample_user_id)

        assert stats["total_follow_ups"] == 4
        assert stats["pending_follow_ups"] == 1
        assert stats["overdue_follow_ups"] == 1
        assert stats["completed_follow_ups"] == 2
        assert stats["due_follow_ups"] == 0
        assert stats["response_rate"] == 25.0

    @pytest.mark.asyncio
    async def test_stats_empty(self, settings, sample_user_id):
        counts = MagicMock()
        counts.all.return_value = []
        responded = MagicMock()
        responded.scalar_one.return_value = 0
        db = _make_db()
        db.execute = AsyncMock(side_effect=[counts, responded])
        service = FollowUpService(db, settings)

        stats = await service.get_follow_up_stats(sample_user_id)

        assert stats["total_follow_ups"] == 0
        assert stats["response_rate"] == 0.0


# ---------------------------------------------------------------------------
# Response detection
# ---------------------------------------------------------------------------

class TestProcessIncomingEmail:
    @pytest.mark.asyncio
    async def test_reply_from_recipient_completes(self, settings, sample_user_id):
        follow_up = _make_follow_up(recipients=["Alice <alice@acme.com>"], user_id=sample_user_id)
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_scalars_result([follow_up]), _write_result(1)])
        service = FollowUpService(db, settings)

        completed = await service.process_incoming_email(
            sample_user_id, "thread_001", "ALICE@acme.com", NOW
        )

        assert completed == [follow_up.id]
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reply_from_stranger_ignored(self, settings, sample_user_id):
        follow_up = _make_follow_up(recipients=["alice@acme.com"], user_id=sample_user_id)
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_scalars_result([follow_up])])
        service = FollowUpService(db, settings)

        completed = await service.process_incoming_email(
            sample_user_id, "thread_001", "Mallory <mallory@evil.com>", NOW
        )

        assert completed == []
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_closed_not_reported(self, settings, sample_user_id):
        follow_up = _make_follow_up(user_id=sample_user_id)
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_scalars_result([follow_up]), _write_result(0)])
        service = FollowUpService(db, settings)

        completed = await service.process_incoming_email(
            sample_user_id, "thread_001", "alice@acme.com", NOW
        )

        assert completed == []


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

class TestReminders:
    @pytest.mark.asyncio
    async def test_mark_sent_bumps_follow_up_counter(self, settings):
        db = _make_db()
        db.execute = AsyncMock(side_effect=[_write_result(1), _write_result(1)])
        service = FollowUpService(db, settings)

        assert await service.mark_reminder_sent(_make_reminder(), NOW) is True
        assert db.execute.await_count == 2
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mark_sent_twice_is_noop(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(0))
        service = FollowUpService(db, settings)

        assert await service.mark_reminder_sent(_make_reminder(), NOW) is False
        assert db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_create_reminder(self, settings, sample_user_id):
        db = _make_db()
        service = FollowUpService(db, settings)

        reminder = await service.create_reminder(
            follow_up_id=uuid.uuid4(),
            user_id=sample_user_id,
            reminder_type=ReminderType.NOTIFICATION,
            reminder_time=NOW,
            reminder_title="x" * 600,
        )

        assert reminder.status == ReminderStatus.PENDING
        assert len(reminder.reminder_title) == 500
        db.add.assert_called_once_with(reminder)

    @pytest.mark.asyncio
    async def test_failed_and_cancelled(self, settings):
        db = _make_db()
        db.execute = AsyncMock(return_value=_write_result(1))
        service = FollowUpService(db, settings)

        assert await service.mark_reminder_failed(_make_reminder(), "webhook down") is True
        assert await service.cancel_reminder(_make_reminder()) is True
