"""
Idempotent enqueue of notification jobs.

The idempotency key is derived from (appointment, type, scheduled_at). The
insert is ``ON CONFLICT DO NOTHING`` on that key, so a repeated call returns
the row written by the first call, untouched.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.models.enums import NotificationChannel, NotificationJobStatus, NotificationType
from willcall.models.notification_job import AppointmentNotificationJob
from willcall.utils.business_time import to_utc_iso

logger = logging.getLogger(__name__)


def _enum_value(value) -> str:
    return value.value if hasattr(value, "value") else str(value)


def build_idempotency_key(
    appointment_id,
    notification_type: Union[NotificationType, str],
    scheduled_at: datetime,
) -> str:
    return f"{appointment_id}:{_enum_value(notification_type)}:{to_utc_iso(scheduled_at)}"


async def enqueue_job(
    db: AsyncSession,
    appointment_id,
    notification_type: Union[NotificationType, str],
    scheduled_at: datetime,
    channel: Union[NotificationChannel, str] = NotificationChannel.BOTH,
    payload_snapshot: Optional[dict] = None,
) -> AppointmentNotificationJob:
    """Create a Pending job, or return the existing one with the same key.

    Does not commit; the caller owns the transaction.
    """
    key = build_idempotency_key(appointment_id, notification_type, scheduled_at)

    stmt = (
        pg_insert(AppointmentNotificationJob)
        .values(
            appointment_id=appointment_id,
            type=_enum_value(notification_type),
            channel=_enum_value(channel),
            scheduled_at=scheduled_at,
            status=NotificationJobStatus.PENDING.value,
            idempotency_key=key,
            payload_snapshot=payload_snapshot or {},
            attempt_count=0,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(AppointmentNotificationJob.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()

    job_result = await db.execute(
        select(AppointmentNotificationJob).where(AppointmentNotificationJob.idempotency_key == key)
    )
    job = job_result.scalar_one()

    if inserted_id is None:
        logger.debug("enqueue_job: %s already enqueued (job %s)", key, job.id)
    else:
        logger.info(
            "enqueue_job: %s for appointment %s at %s",
            _enum_value(notification_type), appointment_id, to_utc_iso(scheduled_at),
        )
    return job
