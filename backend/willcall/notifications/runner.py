"""
Dispatch loop body: process the due Pending jobs, oldest first.

Jobs are handled one at a time so the per-appointment cap check never races
with a send for the same appointment in this process.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from willcall.config import get_settings
from willcall.models.appointment import PickupAppointment
from willcall.models.enums import REMINDER_TYPES, NotificationJobStatus
from willcall.models.notification_job import AppointmentNotificationJob
from willcall.notifications.dispatch import ChannelSenders, send_job
from willcall.notifications.eligibility import (
    has_reached_notification_cap,
    should_skip_for_quiet_hours,
)
from willcall.utils.business_time import to_utc_iso, utcnow

logger = logging.getLogger(__name__)


async def load_due_jobs(
    db: AsyncSession,
    now: datetime,
    limit: Optional[int] = None,
) -> list[AppointmentNotificationJob]:
    limit = limit or get_settings().NOTIFICATIONS_BATCH_SIZE
    result = await db.execute(
        select(AppointmentNotificationJob)
        .where(
            AppointmentNotificationJob.status == NotificationJobStatus.PENDING.value,
            AppointmentNotificationJob.scheduled_at <= now,
        )
        .options(
            selectinload(AppointmentNotificationJob.appointment)
            .selectinload(PickupAppointment.orders)
        )
        .order_by(AppointmentNotificationJob.scheduled_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _finish(db: AsyncSession, job, status: NotificationJobStatus, now: datetime) -> None:
    job.status = status.value
    job.last_attempt_at = now
    await db.commit()


async def process_job(
    db: AsyncSession,
    job,
    senders: ChannelSenders,
    now: Optional[datetime] = None,
    appointment=None,
) -> str:
    """Apply the gates to one job and send it if none apply.

    Returns the resulting status value. Send failures propagate after the
    job has been marked Failed.
    """
    now = now or utcnow()
    appointment = appointment if appointment is not None else job.appointment

    # Gated on the job's scheduled time, not on when it is processed
    if should_skip_for_quiet_hours(job.scheduled_at):
        logger.info(
            "process_job: job %s skipped (quiet hours at %s)", job.id, to_utc_iso(job.scheduled_at),
        )
        await _finish(db, job, NotificationJobStatus.SKIPPED, now)
        return job.status

    ignore_cap = bool((job.payload_snapshot or {}).get("ignore_cap"))
    if not ignore_cap and await has_reached_notification_cap(db, job.appointment_id):
        logger.info("process_job: job %s skipped (cap reached)", job.id)
        await _finish(db, job, NotificationJobStatus.SKIPPED, now)
        return job.status

    terminal = get_settings().reminder_terminal_statuses
    if appointment.status in terminal and job.type in REMINDER_TYPES:
        logger.info(
            "process_job: job %s cancelled (appointment %s is %s)",
            job.id, appointment.id, appointment.status,
        )
        await _finish(db, job, NotificationJobStatus.CANCELLED, now)
        return job.status

    await send_job(db, job, appointment, senders, now=now)
    return job.status


async def run_pending_jobs(
    db: AsyncSession,
    senders: ChannelSenders,
    now: Optional[datetime] = None,
) -> dict:
    """One pass over the due jobs.

    Returns ``{"processed", "sent", "skipped", "cancelled", "failed"}``.
    """
    now = now or utcnow()
    counts = {"processed": 0, "sent": 0, "skipped": 0, "cancelled": 0, "failed": 0}

    jobs = await load_due_jobs(db, now)
    if not jobs:
        logger.debug("run_pending_jobs: no pending jobs")
        return counts

    logger.info("run_pending_jobs: %d due job(s)", len(jobs))
    for job in jobs:
        counts["processed"] += 1
        try:
            status = await process_job(db, job, senders, now=now)
        except Exception as e:
            counts["failed"] += 1
            if job.status == NotificationJobStatus.FAILED.value:
                logger.error("run_pending_jobs: job %s failed: %s", job.id, e)
                continue
            # A gate query failed: the transaction is unusable and rollback expires the batch
            logger.error("run_pending_jobs: job %s left Pending, ending pass: %s", job.id, e)
            await db.rollback()
            break
        key = status.lower()
        if key in counts:
            counts[key] += 1

    logger.info(
        "run_pending_jobs: processed=%d sent=%d skipped=%d cancelled=%d failed=%d",
        counts["processed"], counts["sent"], counts["skipped"], counts["cancelled"], counts["failed"],
    )
    return counts
