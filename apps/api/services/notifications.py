"""Transactional email notifications via SendGrid."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from config import settings

logger = logging.getLogger(__name__)


class Notifier:
    """Sends email when SendGrid is configured; otherwise logs and skips."""

    def __init__(self, api_key: str, from_email: str):
        self.from_email = from_email
        self._client = SendGridAPIClient(api_key) if api_key and from_email else None

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def send_email(
        self,
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
    ) -> bool:
        if self._client is None:
            logger.warning("SendGrid not configured. Email not sent to %s (%s)", to, subject)
            return False

        plain_text = text if text is not None else re.sub(r"<[^>]+>", "", html or "")
        message = Mail(
            from_email=self.from_email,
            to_emails=to,
            subject=subject,
            plain_text_content=plain_text,
            html_content=html,
        )
        await asyncio.to_thread(self._client.send, message)
        logger.info("Sent email '%s' to %s", subject, to)
        return True


def create_notifier() -> Notifier:
    return Notifier(settings.SENDGRID_API_KEY, settings.SENDGRID_FROM_EMAIL)
