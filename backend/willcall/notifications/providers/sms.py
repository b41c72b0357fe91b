"""
Twilio SMS sender.

Outside production, ``NOTIFICATIONS_TEST_PHONE`` replaces every recipient so
no customer receives a message from a dev or staging worker.
"""

import asyncio
import logging
from typing import Optional

from willcall.config import Settings, get_settings

logger = logging.getLogger(__name__)


class SmsSender:
    def __init__(self, settings: Optional[Settings] = None, client=None):
        self.settings = settings or get_settings()
        self.from_number = self.settings.TWILIO_FROM_NUMBER
        self.configured = bool(
            self.settings.TWILIO_ACCOUNT_SID and self.settings.TWILIO_AUTH_TOKEN and self.from_number
        )
        if not self.configured and self.settings.is_production:
            raise RuntimeError(
                "FATAL: TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER "
                "are required in production"
            )
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self.settings.TWILIO_ACCOUNT_SID, self.settings.TWILIO_AUTH_TOKEN)
        return self._client

    def resolve_recipient(self, phone: Optional[str]) -> str:
        if not self.settings.is_production and self.settings.NOTIFICATIONS_TEST_PHONE:
            return self.settings.NOTIFICATIONS_TEST_PHONE
        return phone or ""

    async def send(self, to: Optional[str], body: str) -> dict:
        """Send one SMS. Raises ``TwilioRestException`` on a rejected send."""
        recipient = self.resolve_recipient(to)
        if not recipient:
            logger.info("SmsSender.send: skipped (no recipient)")
            return {"ok": True, "skipped": True}
        if not self.configured:
            logger.warning("SmsSender.send: skipped (Twilio settings missing)")
            return {"ok": True, "skipped": True}

        # Twilio's SDK is synchronous; keep it off the event loop
        message = await asyncio.to_thread(
            self.client.messages.create,
            to=recipient,
            from_=self.from_number,
            body=body,
        )
        logger.info("SmsSender.send: sent SID=%s to=%s", message.sid, recipient)
        return {"ok": True, "skipped": False, "sid": message.sid}
