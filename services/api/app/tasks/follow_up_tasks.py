"""Celery tasks for follow-up tracking and the periodic sweep."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import get_settings
from app.models.follow_up import FollowUpPriority
from app.services.automation_service import build_automation_service
from app.services.follow_up_service import FollowUpService
from app.services.sweep_service import build_sweep

logger = logging.getLogger(__name__)


def _get_async_session() -> async_sessionmaker:
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    return async_sessionmaker(engine, expire_on_commit=False)


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@shared_task(name="app.tasks.follow_up_tasks.run_followup_sweep")
def run_followup_sweep():
    """Periodic task: one pass of status derivation, reminders, automation and approval expiry.

    Raises when the database is unreachable so the failure shows up in task
    metrics; the next beat tick runs a fresh pass.
    """

    async def _sweep():
        settings = get_settings()
        session_factory = _get_async_session()
        async with session_factory() as db:
            report = await build_sweep(db, settings).run()
        return report.as_dict()

    return asyncio.run(_sweep())


@shared_task(name="app.tasks.follow_up_tasks.track_sent_email")
def track_sent_email(
    user_id: str,
    email_id: str,
    subject: str,
    recipients: list[str],
    sent_at: str,
    thread_id: str | None = None,
    organization_id: str | None = None,
    auto_follow_up: bool = True,
    follow_up_days: int | None = None,
    priority: str = FollowUpPriority.MEDIUM.value,
):
    """Send-tracking hook for the mail pipeline. Returns the follow-up id, if one was created."""

    async def _track():
        settings = get_settings()
        session_factory = _get_async_session()
        async with session_factory() as db:
            follow_up = await FollowUpService(db, settings).track_sent_email(
                user_id=uuid.UUID(user_id),
                organization_id=uuid.UUID(organization_id) if organization_id else None,
                email_id=email_id,
                thread_id=thread_id,
                subject=subject,
                recipients=recipients,
                sent_at=_parse_datetime(sent_at),
                auto_follow_up=auto_follow_up,
                follow_up_days=follow_up_days,
                priority=FollowUpPriority(priority),
            )
        if follow_up is None:
            logger.info("Email %s not tracked", email_id)
            return None
        return str(follow_up.id)

    return asyncio.run(_track())


@shared_task(name="app.tasks.follow_up_tasks.process_incoming_email")
def process_incoming_email(
    user_id: str,
    thread_id: str,
    from_addr: str,
    received_at: str,
):
    """Response detection for a received message. Returns completed follow-up ids."""

    async def _process():
        settings = get_settings()
        session_factory = _get_async_session()
        async with session_factory() as db:
            follow_ups = FollowUpService(db, settings)
            received = _parse_datetime(received_at)
            completed = await follow_ups.process_incoming_email(
                uuid.UUID(user_id),
                thread_id,
                from_addr,
                received,
            )
            if completed:
                automation = build_automation_service(db, settings, follow_ups)
                for follow_up_id in completed:
                    await automation.record_response(follow_up_id, received)
        return [str(i) for i in completed]

    return asyncio.run(_process())
