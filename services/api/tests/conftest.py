"""Shared test fixtures."""

import uuid
from datetime import datetime, timezone

import pytest

from app.config import Settings


@pytest.fixture
def sample_user_id() -> uuid.UUID:
    return uuid.UUID("12345678-1234-1234-1234-123456789abc")


@pytest.fixture
def now() -> datetime:
    # A Wednesday, 10:00 UTC
    return datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        auto_tracking_enabled=True,
        default_follow_up_days=3,
        overdue_threshold_hours=24,
        default_approval_timeout_hours=24,
        approval_expiry_enabled=True,
        automation_timezone="UTC",
        notification_webhook_url="https://hooks.example.com/reminders",
        mail_api_url="https://mail.example.com/send",
    )
