"""
ErpSession: explicit Acumatica auth state.

Token, refresh token and expiry live on a value object that callers create
and pass around, rather than on a process-wide client, so concurrent sync
tasks never share hidden mutable state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx

from willcall.config import Settings, get_settings
from willcall.utils.business_time import utcnow

logger = logging.getLogger(__name__)

# Refresh a little early so a token never expires mid-request
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

_REQUIRED_SETTINGS = (
    "ACUMATICA_BASE_URL",
    "ACUMATICA_CLIENT_ID",
    "ACUMATICA_CLIENT_SECRET",
    "ACUMATICA_USERNAME",
    "ACUMATICA_PASSWORD",
)


@dataclass
class ErpSession:
    base_url: str
    client_id: str
    client_secret: str
    username: str
    password: str
    endpoint: str = "CustomEndpoint/24.200.001"
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ErpSession":
        settings = settings or get_settings()
        missing = [name for name in _REQUIRED_SETTINGS if not getattr(settings, name).strip()]
        if missing:
            raise RuntimeError(f"Missing ERP settings: {', '.join(missing)}")
        return cls(
            base_url=settings.ACUMATICA_BASE_URL.strip().rstrip("/"),
            client_id=settings.ACUMATICA_CLIENT_ID.strip(),
            client_secret=settings.ACUMATICA_CLIENT_SECRET.strip(),
            username=settings.ACUMATICA_USERNAME.strip(),
            password=settings.ACUMATICA_PASSWORD,
            endpoint=settings.ACUMATICA_ENDPOINT.strip("/"),
        )

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/identity/connect/token"

    def entity_url(self, entity: str) -> str:
        return f"{self.base_url}/entity/{self.endpoint}/{entity}"

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return bool(self.access_token and self.expires_at and now < self.expires_at)

    async def refresh(self, client: httpx.AsyncClient) -> str:
        """Obtain a new access token.

        Uses the refresh-token grant when one is held, falling back to the
        password grant once if the refresh token is rejected.
        """
        if self.refresh_token:
            response = await client.post(self.token_url, data={
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
            })
            if response.is_success:
                return self._store_token(response.json())
            logger.warning(
                "ErpSession.refresh: refresh grant rejected (%s), retrying with password grant",
                response.status_code,
            )
            self.refresh_token = None

        response = await client.post(self.token_url, data={
            "grant_type": "password",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "username": self.username,
            "password": self.password,
            "scope": "api offline_access",
        })
        response.raise_for_status()
        return self._store_token(response.json())

    async def get_token(self, client: httpx.AsyncClient) -> str:
        if self.is_valid():
            return self.access_token
        return await self.refresh(client)

    def _store_token(self, data: dict) -> str:
        token = data.get("access_token")
        if not token:
            raise RuntimeError("ERP token response missing access_token")
        expires_in = int(data.get("expires_in", 3600))
        self.access_token = token
        self.refresh_token = data.get("refresh_token") or self.refresh_token
        self.expires_at = utcnow() + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        logger.info("ErpSession: access token acquired (expires_at=%s)", self.expires_at)
        return token
