"""
Eligibility rules applied by the job runner before a send.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.config import get_settings
from willcall.models.enums import NotificationJobStatus
from willcall.models.notification_job import AppointmentNotificationJob
from willcall.utils.business_time import is_quiet_hours

logger = logging.getLogger(__name__)


def should_skip_for_quiet_hours(scheduled_at: datetime) -> bool:
    return is_quiet_hours(scheduled_at)


async def count_sent_notifications(db: AsyncSession, appointment_id) -> int:
    result = await db.execute(
        select(func.count(AppointmentNotificationJob.id)).where(
            AppointmentNotificationJob.appointment_id == appointment_id,
            AppointmentNotificationJob.status == NotificationJobStatus.SENT.value,
        )
    )
    return int(result.scalar() or 0)


async def has_reached_notification_cap(
    db: AsyncSession,
    appointment_id,
    cap: Optional[int] = None,
) -> bool:
    """True once the appointment has ``cap`` or more Sent jobs, across all types."""
    cap = cap if cap is not None else get_settings().NOTIFICATIONS_CAP
    sent = await count_sent_notifications(db, appointment_id)
    if sent >= cap:
        logger.info(
            "has_reached_notification_cap: appointment %s at cap (%d/%d)",
            appointment_id, sent, cap,
        )
        return True
    return False
