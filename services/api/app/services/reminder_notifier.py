"""Reminder delivery via an incoming webhook (Slack-compatible payload)."""

import logging

import httpx

from app.config import Settings
from app.models.follow_up_reminder import FollowUpReminder, ReminderType

logger = logging.getLogger(__name__)

# Attachment color per reminder type
_COLOR_MAP: dict[str, str] = {
    ReminderType.NOTIFICATION.value: "#F39C12",  # orange
    ReminderType.EMAIL.value: "#3498DB",          # blue
    ReminderType.DASHBOARD.value: "#95A5A6",      # gray
}

# Slack blocks have a 3000-char text limit
_MAX_BODY_LENGTH = 3000


class ReminderNotifier:
    """Deliver due reminders.

    Dashboard reminders are read from the database by the UI, so delivering
    one only means marking it sent. Notification and email reminders are
    posted to the configured webhook.
    """

    def __init__(self, webhook_url: str = "") -> None:
        self._webhook_url = webhook_url

    @staticmethod
    def build_payload(reminder: FollowUpReminder) -> dict:
        type_str = getattr(reminder.reminder_type, "value", reminder.reminder_type)
        body = reminder.reminder_message or ""
        if len(body) > _MAX_BODY_LENGTH:
            body = body[: _MAX_BODY_LENGTH - 3] + "..."

        return {
            "attachments": [
                {
                    "color": _COLOR_MAP.get(type_str, _COLOR_MAP[ReminderType.DASHBOARD.value]),
                    "blocks": [
                        {
                            "type": "header",
                            "text": {
                                "type": "plain_text",
                                "text": reminder.reminder_title[:150],
                                "emoji": True,
                            },
                        },
                        {
                            "type": "section",
                            "text": {"type": "mrkdwn", "text": body or reminder.reminder_title},
                        },
                        {
                            "type": "context",
                            "elements": [
                                {"type": "mrkdwn", "text": f"Type: *{type_str}*"},
                                {"type": "mrkdwn", "text": f"Follow-up: `{reminder.follow_up_id}`"},
                            ],
                        },
                    ],
                }
            ]
        }

    async def deliver(self, reminder: FollowUpReminder) -> bool:
        """Returns True on success, False on failure."""
        if reminder.reminder_type == ReminderType.DASHBOARD:
            return True

        if not self._webhook_url:
            logger.warning("No notification webhook configured; cannot deliver reminder %s", reminder.id)
            return False

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(self._webhook_url, json=self.build_payload(reminder))
        except httpx.TimeoutException:
            logger.error("Reminder webhook timed out for reminder %s", reminder.id)
            return False
        except httpx.HTTPError as e:
            logger.error("Reminder webhook failed for reminder %s: %s", reminder.id, e)
            return False

        if response.status_code == 200:
            logger.info("Reminder delivered: %s", reminder.reminder_title)
            return True
        logger.warning(
            "Reminder webhook returned %d: %s",
            response.status_code,
            response.text[:200],
        )
        return False


def get_reminder_notifier(settings: Settings) -> ReminderNotifier:
    return ReminderNotifier(webhook_url=settings.notification_webhook_url)
