"""Unit tests for the follow-up router endpoints."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.models.follow_up import FollowUp, FollowUpPriority, FollowUpStatus, FollowUpType
from app.routers.follow_ups import router
from app.services.automation_service import AutomationService
from app.services.follow_up_service import FollowUpService

# ---------------------------------------------------------------------------
# Test app setup
# ---------------------------------------------------------------------------

TEST_USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def service():
    return AsyncMock(spec=FollowUpService)


@pytest.fixture
def automation():
    return AsyncMock(spec=AutomationService)


@pytest.fixture
def app(service, automation):
    from app.dependencies import (
        get_automation_service,
        get_current_organization_id,
        get_current_user_id,
        get_follow_up_service,
    )

    test_app = FastAPI()
    test_app.include_router(router, prefix="/api/v1")

    test_app.dependency_overrides[get_current_user_id] = lambda: TEST_USER_ID
    test_app.dependency_overrides[get_current_organization_id] = lambda: None
    test_app.dependency_overrides[get_follow_up_service] = lambda: service
    test_app.dependency_overrides[get_automation_service] = lambda: automation
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def _make_follow_up(status=FollowUpStatus.PENDING, **overrides):
    values = {
        "id": uuid.uuid4(),
        "user_id": TEST_USER_ID,
        "email_id": "msg_001",
        "thread_id": "thread_001",
        "original_sent_at": NOW,
        "follow_up_due_at": NOW + timedelta(days=3),
        "status": status,
        "follow_up_type": FollowUpType.MANUAL,
        "priority": FollowUpPriority.MEDIUM,
        "original_subject": "Proposal",
        "original_recipients": ["alice@acme.com"],
        "ai_draft_approved": False,
        "reminder_count": 0,
        "extra_data": {},
    }
    values.update(overrides)
    return FollowUp(**values)


CREATE_BODY = {
    "email_id": "msg_001",
    "thread_id": "thread_001",
    "original_sent_at": "2025-03-12T10:00:00Z",
    "original_subject": "Proposal",
    "original_recipients": ["alice@acme.com"],
}


# ---------------------------------------------------------------------------
# Creation and tracking
# ---------------------------------------------------------------------------

class TestCreateFollowUp:
    def test_created(self, client, service):
        service.create_follow_up.return_value = _make_follow_up()

        resp = client.post("/api/v1/followups", json=CREATE_BODY)

        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert data["original_recipients"] == ["alice@acme.com"]
        kwargs = service.create_follow_up.call_args.kwargs
        assert kwargs["user_id"] == TEST_USER_ID
        assert kwargs["original_sent_at"] == NOW

    def test_auto_reply_rejected(self, client, service):
        service.create_follow_up.return_value = None

        resp = client.post("/api/v1/followups", json={**CREATE_BODY, "original_subject": "Re: Proposal"})

        assert resp.status_code == 422

    def test_invalid_body(self, client):
        resp = client.post("/api/v1/followups", json={**CREATE_BODY, "original_recipients": []})

        assert resp.status_code == 422


class TestTrack:
    def test_not_tracked_returns_null(self, client, service):
        service.track_sent_email.return_value = None

        resp = client.post(
            "/api/v1/followups/track",
            json={
                "email_id": "msg_001",
                "subject": "Proposal",
                "recipients": ["alice@acme.com"],
                "sent_at": "2025-03-12T10:00:00Z",
                "auto_follow_up": False,
            },
        )

        assert resp.status_code == 200
        assert resp.json() is None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestList:
    def test_filters_passed_through(self, client, service):
        service.get_follow_ups.return_value = [_make_follow_up(FollowUpStatus.DUE)]

        resp = client.get("/api/v1/followups?status=due&status=overdue&priority=high")

        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        kwargs = service.get_follow_ups.call_args.kwargs
        assert kwargs["statuses"] == [FollowUpStatus.DUE, FollowUpStatus.OVERDUE]
        assert kwargs["priorities"] == [FollowUpPriority.HIGH]

    def test_stats(self, client, service):
        service.get_follow_up_stats.return_value = {
            "total_follow_ups": 4,
            "pending_follow_ups": 1,
            "due_follow_ups": 0,
            "overdue_follow_ups": 1,
            "completed_follow_ups": 2,
            "response_rate": 25.0,
        }

        resp = client.get("/api/v1/followups/stats")

        assert resp.status_code == 200
        assert resp.json()["response_rate"] == 25.0


# ---------------------------------------------------------------------------
# Response detection
# ---------------------------------------------------------------------------

class TestResponses:
    def test_completed_follow_ups_recorded_on_executions(self, client, service, automation):
        completed = [uuid.uuid4(), uuid.uuid4()]
        service.process_incoming_email.return_value = completed

        resp = client.post(
            "/api/v1/followups/responses",
            json={
                "message_id": "reply_001",
                "thread_id": "thread_001",
                "from_addr": "Alice <alice@acme.com>",
                "received_at": "2025-03-13T08:00:00Z",
            },
        )

        assert resp.status_code == 200
        assert resp.json()["completed_follow_up_ids"] == [str(i) for i in completed]
        assert automation.record_response.await_count == 2


# ---------------------------------------------------------------------------
# Bulk update
# ---------------------------------------------------------------------------

class TestBulkUpdate:
    def test_reports_counts(self, client, service):
        service.bulk_update.return_value = 1
        ids = [str(uuid.uuid4()), str(uuid.uuid4())]

        resp = client.patch("/api/v1/followups/bulk", json={"ids": ids, "patch": {"priority": "urgent"}})

        assert resp.status_code == 200
        assert resp.json() == {"requested": 2, "updated": 1}
        args, kwargs = service.bulk_update.call_args
        assert args[1] == {"priority": FollowUpPriority.URGENT}
        assert kwargs["user_id"] == TEST_USER_ID

    def test_failure_is_503(self, client, service):
        service.bulk_update.return_value = None

        resp = client.patch(
            "/api/v1/followups/bulk",
            json={"ids": [str(uuid.uuid4())], "patch": {"context_summary": "x"}},
        )

        assert resp.status_code == 503

    def test_empty_patch_is_422(self, client):
        resp = client.patch("/api/v1/followups/bulk", json={"ids": [str(uuid.uuid4())], "patch": {}})

        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Single follow-up actions
# ---------------------------------------------------------------------------

class TestActions:
    def test_snooze_not_found(self, client, service):
        service.get_follow_up.return_value = None

        resp = client.post(
            f"/api/v1/followups/{uuid.uuid4()}/snooze",
            json={"snooze_until": "2025-03-20T09:00:00Z"},
        )

        assert resp.status_code == 404

    def test_snooze_closed_is_409(self, client, service):
        service.get_follow_up.return_value = _make_follow_up(FollowUpStatus.COMPLETED)
        service.snooze_follow_up.return_value = False

        resp = client.post(
            f"/api/v1/followups/{uuid.uuid4()}/snooze",
            json={"snooze_until": "2025-03-20T09:00:00Z"},
        )

        assert resp.status_code == 409

    def test_snooze(self, client, service):
        follow_up = _make_follow_up(follow_up_due_at=datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc))
        service.get_follow_up.return_value = follow_up
        service.snooze_follow_up.return_value = True

        resp = client.post(
            f"/api/v1/followups/{follow_up.id}/snooze",
            json={"snooze_until": "2025-03-20T09:00:00Z"},
        )

        assert resp.status_code == 200
        service.snooze_follow_up.assert_awaited_once_with(
            follow_up.id, datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc)
        )

    def test_complete_without_body(self, client, service):
        follow_up = _make_follow_up()
        service.get_follow_up.return_value = follow_up
        service.mark_completed.return_value = True

        resp = client.post(f"/api/v1/followups/{follow_up.id}/complete")

        assert resp.status_code == 200
        service.mark_completed.assert_awaited_once_with(follow_up.id, None)

    def test_cancel_closed_is_409(self, client, service):
        service.get_follow_up.return_value = _make_follow_up(FollowUpStatus.CANCELLED)
        service.cancel_follow_up.return_value = False

        resp = client.post(f"/api/v1/followups/{uuid.uuid4()}/cancel")

        assert resp.status_code == 409
