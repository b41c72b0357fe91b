"""
Appointment access tokens.

A token is active while it is neither revoked nor expired. Rotation revokes
every active token and inserts the replacement in the same transaction, so
readers never observe a moment with zero active tokens.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.models.access_token import AppointmentAccessToken
from willcall.utils.business_time import utcnow

logger = logging.getLogger(__name__)

MAX_TOKEN_DAYS = 30
END_PLUS_DAYS = 7


def generate_token() -> str:
    return secrets.token_hex(24)


def compute_token_expiry(end_at: datetime, issued_at: Optional[datetime] = None) -> datetime:
    """A week past the pickup, but never more than 30 days after issue."""
    issued_at = issued_at or utcnow()
    return min(end_at + timedelta(days=END_PLUS_DAYS), issued_at + timedelta(days=MAX_TOKEN_DAYS))


async def create_appointment_token(
    db: AsyncSession,
    appointment_id,
    end_at: datetime,
    now: Optional[datetime] = None,
) -> AppointmentAccessToken:
    now = now or utcnow()
    token = AppointmentAccessToken(
        appointment_id=appointment_id,
        token=generate_token(),
        issued_at=now,
        expires_at=compute_token_expiry(end_at, now),
    )
    db.add(token)
    await db.flush()
    return token


async def rotate_appointment_token(
    db: AsyncSession,
    appointment_id,
    end_at: datetime,
    now: Optional[datetime] = None,
) -> AppointmentAccessToken:
    now = now or utcnow()
    result = await db.execute(
        update(AppointmentAccessToken)
        .where(
            AppointmentAccessToken.appointment_id == appointment_id,
            AppointmentAccessToken.revoked_at.is_(None),
        )
        .values(revoked_at=now)
    )
    if result.rowcount:
        logger.info(
            "rotate_appointment_token: revoked %d token(s) for appointment %s",
            result.rowcount, appointment_id,
        )
    return await create_appointment_token(db, appointment_id, end_at, now=now)


async def get_active_token(
    db: AsyncSession,
    appointment_id,
    now: Optional[datetime] = None,
) -> Optional[AppointmentAccessToken]:
    now = now or utcnow()
    result = await db.execute(
        select(AppointmentAccessToken)
        .where(
            AppointmentAccessToken.appointment_id == appointment_id,
            AppointmentAccessToken.revoked_at.is_(None),
            AppointmentAccessToken.expires_at > now,
        )
        .order_by(AppointmentAccessToken.issued_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_appointment_token(
    db: AsyncSession,
    appointment_id,
    end_at: datetime,
    now: Optional[datetime] = None,
) -> AppointmentAccessToken:
    token = await get_active_token(db, appointment_id, now=now)
    if token is not None:
        return token
    return await create_appointment_token(db, appointment_id, end_at, now=now)
