"""
Microsoft Graph email sender.

Tokens come from the client-credentials grant and are reused until shortly
before they expire. Outside production a message goes to
``NOTIFICATIONS_TEST_EMAIL`` when set and is skipped otherwise.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

import httpx

from willcall.config import Settings, get_settings
from willcall.utils.business_time import utcnow

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class EmailSender:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self.configured = bool(
            self.settings.MS_GRAPH_TENANT_ID
            and self.settings.MS_GRAPH_CLIENT_ID
            and self.settings.MS_GRAPH_CLIENT_SECRET
            and self.settings.MS_GRAPH_FROM_EMAIL
        )
        if not self.configured and self.settings.is_production:
            raise RuntimeError(
                "FATAL: MS_GRAPH_TENANT_ID, MS_GRAPH_CLIENT_ID, MS_GRAPH_CLIENT_SECRET and "
                "MS_GRAPH_FROM_EMAIL are required in production"
            )
        self._client = client
        self._access_token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @property
    def token_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.settings.MS_GRAPH_TENANT_ID}/oauth2/v2.0/token"

    def resolve_recipient(self, email: Optional[str]) -> str:
        if self.settings.is_production:
            return email or ""
        return self.settings.NOTIFICATIONS_TEST_EMAIL

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        if self._access_token and self._expires_at and utcnow() < self._expires_at:
            return self._access_token

        response = await client.post(self.token_url, data={
            "client_id": self.settings.MS_GRAPH_CLIENT_ID,
            "client_secret": self.settings.MS_GRAPH_CLIENT_SECRET,
            "scope": GRAPH_SCOPE,
            "grant_type": "client_credentials",
        })
        response.raise_for_status()
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise RuntimeError("Graph token response missing access_token")

        self._access_token = token
        self._expires_at = utcnow() + timedelta(seconds=int(data.get("expires_in", 3600))) - TOKEN_EXPIRY_MARGIN
        logger.info("EmailSender: Graph token acquired")
        return token

    async def send(self, to: Optional[str], subject: str, html: str) -> dict:
        """Send one HTML email. Raises ``httpx.HTTPStatusError`` on a non-2xx response."""
        recipient = self.resolve_recipient(to)
        if not recipient:
            logger.info("EmailSender.send: skipped (no recipient)")
            return {"ok": True, "skipped": True}
        if not self.configured:
            raise RuntimeError("Microsoft Graph settings are missing")

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=5.0))
        try:
            token = await self._get_token(client)
            response = await client.post(
                f"{GRAPH_BASE_URL}/users/{quote(self.settings.MS_GRAPH_FROM_EMAIL, safe='')}/sendMail",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "message": {
                        "subject": subject,
                        "body": {"contentType": "HTML", "content": html},
                        "toRecipients": [{"emailAddress": {"address": recipient}}],
                    },
                    "saveToSentItems": True,
                },
            )
            if response.is_error:
                logger.error(
                    "EmailSender.send: Graph sendMail failed (%s): %s",
                    response.status_code, response.text[:500],
                )
            response.raise_for_status()
        finally:
            if owns_client:
                await client.aclose()

        logger.info("EmailSender.send: sent to=%s", recipient)
        return {"ok": True, "skipped": False}
