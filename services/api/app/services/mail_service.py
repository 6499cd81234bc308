"""Outbound mail relay client used to send automated follow-ups."""

import logging

import httpx

from app.config import Settings
from app.models.follow_up import FollowUp

logger = logging.getLogger(__name__)


class SendError(Exception):
    """The mail relay rejected or failed to accept a message."""


class FollowUpSender:
    """Posts follow-up messages to the configured mail relay."""

    def __init__(self, api_url: str, api_key: str = "") -> None:
        self._api_url = api_url
        self._api_key = api_key

    async def send(self, follow_up: FollowUp, subject: str, body: str) -> str | None:
        """Send a follow-up as a reply on the original thread.

        Returns the relay's message id when it provides one.

        Raises:
            SendError: on timeout, transport failure or a non-2xx response.
        """
        payload = {
            "to": list(follow_up.original_recipients or []),
            "subject": subject,
            "body": body,
            "in_reply_to": follow_up.email_id,
            "thread_id": follow_up.thread_id,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Mail relay timed out sending follow-up %s", follow_up.id)
            raise SendError("Mail relay timed out") from e
        except httpx.HTTPError as e:
            logger.error("Mail relay request failed for follow-up %s: %s", follow_up.id, e)
            raise SendError(f"Mail relay request failed: {e}") from e

        if response.status_code >= 300:
            logger.warning(
                "Mail relay returned %d: %s",
                response.status_code,
                response.text[:200],
            )
            raise SendError(f"Mail relay returned {response.status_code}")

        logger.info("Follow-up %s sent to %d recipients", follow_up.id, len(payload["to"]))
        try:
            data = response.json()
        except ValueError:
            return None
        return data.get("message_id") if isinstance(data, dict) else None


def get_follow_up_sender(settings: Settings) -> FollowUpSender:
    return FollowUpSender(
        api_url=settings.mail_api_url,
        api_key=settings.mail_api_key.get_secret_value(),
    )
