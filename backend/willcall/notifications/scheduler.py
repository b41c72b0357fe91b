"""
Lifecycle event handlers: decide which notification jobs an appointment
event produces and enqueue them.

Immediate messages are enqueued for ``now`` (or the end of quiet hours) and,
when channel senders are supplied, dispatched straight away through the
runner's ``process_job`` so the quiet-hours, cap and terminal-status gates
apply exactly as they do in the worker. Without senders the next worker tick
picks them up.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.models.enums import NotificationChannel, NotificationJobStatus, NotificationType
from willcall.models.notification_job import AppointmentNotificationJob
from willcall.notifications.dispatch import ChannelSenders
from willcall.notifications.enqueue import build_idempotency_key, enqueue_job
from willcall.notifications.links import build_appointment_link
from willcall.notifications.reminders import compute_reminder_times
from willcall.notifications.runner import process_job
from willcall.notifications.tokens import get_or_create_appointment_token, rotate_appointment_token
from willcall.utils.business_time import next_allowed_instant, to_utc_iso, utcnow

logger = logging.getLogger(__name__)

READY_WINDOW = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

async def cancel_pending_jobs(
    db: AsyncSession,
    appointment_id,
    keep_keys: Optional[Iterable[str]] = None,
) -> int:
    """Mark the Pending jobs of the appointment Cancelled. Does not commit.

    Jobs whose idempotency key is in ``keep_keys`` stay Pending.
    """
    stmt = update(AppointmentNotificationJob).where(
        AppointmentNotificationJob.appointment_id == appointment_id,
        AppointmentNotificationJob.status == NotificationJobStatus.PENDING.value,
    )
    keep_keys = sorted(keep_keys or ())
    if keep_keys:
        stmt = stmt.where(AppointmentNotificationJob.idempotency_key.not_in(keep_keys))
    result = await db.execute(stmt.values(status=NotificationJobStatus.CANCELLED.value))
    count = result.rowcount or 0
    if count:
        logger.info("cancel_pending_jobs: cancelled %d job(s) for appointment %s", count, appointment_id)
    return count


async def _appointment_link(db: AsyncSession, appointment, now: datetime) -> str:
    token = await get_or_create_appointment_token(db, appointment.id, appointment.end_at, now=now)
    return build_appointment_link(appointment.id, token.token)


async def enqueue_immediate(
    db: AsyncSession,
    appointment,
    notification_type: NotificationType,
    payload_snapshot: dict,
    *,
    channel: NotificationChannel = NotificationChannel.BOTH,
    ignore_cap: bool = False,
    now: Optional[datetime] = None,
) -> AppointmentNotificationJob:
    now = now or utcnow()
    return await enqueue_job(
        db,
        appointment.id,
        notification_type,
        next_allowed_instant(now),
        channel=channel,
        payload_snapshot={**payload_snapshot, "ignore_cap": bool(ignore_cap)},
    )


def reminder_keys(appointment, now: datetime) -> set[str]:
    """Idempotency keys of the reminders the appointment should have now."""
    return {
        build_idempotency_key(appointment.id, kind, at)
        for kind, at in compute_reminder_times(appointment.start_at, now=now)
    }


async def _enqueue_reminders(
    db: AsyncSession,
    appointment,
    link: str,
    order_nbrs: list[str],
    ignore_cap: bool,
    now: datetime,
) -> list[AppointmentNotificationJob]:
    jobs = []
    for kind, at in compute_reminder_times(appointment.start_at, now=now):
        job = await enqueue_job(
            db,
            appointment.id,
            kind,
            at,
            payload_snapshot={"link": link, "order_nbrs": order_nbrs, "ignore_cap": bool(ignore_cap)},
        )
        # An earlier reschedule cancelled this reminder; the appointment is back at that time
        if job.status == NotificationJobStatus.CANCELLED.value:
            logger.info("_enqueue_reminders: reopening cancelled job %s", job.id)
            job.status = NotificationJobStatus.PENDING.value
        jobs.append(job)
    return jobs


async def dispatch_due_jobs(
    db: AsyncSession,
    appointment,
    jobs: list[AppointmentNotificationJob],
    senders: Optional[ChannelSenders],
    now: datetime,
) -> None:
    """Send the jobs in ``jobs`` that are already due, if senders were given.

    A failed send leaves its job Failed and does not stop the others. Any
    other error rolls back and leaves the rest Pending for the worker.
    """
    if senders is None:
        return
    for job in jobs:
        if job.status != NotificationJobStatus.PENDING.value or job.scheduled_at > now:
            continue
        try:
            await process_job(db, job, senders, now=now, appointment=appointment)
        except Exception as e:
            if job.status == NotificationJobStatus.FAILED.value:
                logger.error("dispatch_due_jobs: job %s failed: %s", job.id, e)
                continue
            logger.error("dispatch_due_jobs: job %s left Pending for the worker: %s", job.id, e)
            await db.rollback()
            return


async def send_immediate(
    db: AsyncSession,
    appointment,
    notification_type: NotificationType,
    payload_snapshot: dict,
    *,
    senders: Optional[ChannelSenders] = None,
    channel: NotificationChannel = NotificationChannel.BOTH,
    ignore_cap: bool = False,
    now: Optional[datetime] = None,
) -> AppointmentNotificationJob:
    """Enqueue one message for now, commit, and dispatch it if possible."""
    now = now or utcnow()
    logger.info("send_immediate: %s for appointment %s", notification_type.value, appointment.id)
    job = await enqueue_immediate(
        db, appointment, notification_type, payload_snapshot,
        channel=channel, ignore_cap=ignore_cap, now=now,
    )
    await db.commit()
    await dispatch_due_jobs(db, appointment, [job], senders, now)
    return job


# ---------------------------------------------------------------------------
# 1. Scheduled
# ---------------------------------------------------------------------------

async def handle_appointment_scheduled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> list[AppointmentNotificationJob]:
    """Confirmation now, plus the 1-day and 1-hour reminders still ahead."""
    now = now or utcnow()
    logger.info(
        "handle_appointment_scheduled: appointment=%s staff=%s orders=%d",
        appointment.id, staff_initiated, len(order_nbrs),
    )
    link = await _appointment_link(db, appointment, now)

    confirm = await enqueue_immediate(
        db, appointment, NotificationType.SCHEDULED_CONFIRM,
        {"link": link, "order_nbrs": order_nbrs, "staff_initiated": staff_initiated},
        ignore_cap=ignore_cap, now=now,
    )
    reminders = await _enqueue_reminders(db, appointment, link, order_nbrs, ignore_cap, now)
    await db.commit()

    await dispatch_due_jobs(db, appointment, [confirm, *reminders], senders, now)
    return [confirm, *reminders]


# ---------------------------------------------------------------------------
# 2. Cancelled
# ---------------------------------------------------------------------------

async def handle_appointment_cancelled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    should_notify: bool,
    cancel_reason: Optional[str] = None,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> Optional[AppointmentNotificationJob]:
    """Cancel outstanding jobs and rotate the access token; notify if asked.

    The token rotation commits together with the job cancellation, so the
    old link stops working at the same moment a new one exists.
    """
    now = now or utcnow()
    logger.info(
        "handle_appointment_cancelled: appointment=%s notify=%s has_reason=%s",
        appointment.id, should_notify, bool(cancel_reason),
    )
    await cancel_pending_jobs(db, appointment.id)
    token = await rotate_appointment_token(db, appointment.id, appointment.end_at, now=now)
    await db.commit()

    if not should_notify:
        return None

    return await send_immediate(
        db, appointment, NotificationType.CANCELLED,
        {
            "link": build_appointment_link(appointment.id, token.token),
            "order_nbrs": order_nbrs,
            "cancel_reason": cancel_reason,
            "staff_initiated": staff_initiated,
        },
        senders=senders, ignore_cap=ignore_cap, now=now,
    )


# ---------------------------------------------------------------------------
# 3. Rescheduled
# ---------------------------------------------------------------------------

async def handle_appointment_rescheduled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    old_start_at: datetime,
    old_end_at: datetime,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> list[AppointmentNotificationJob]:
    """Replace the old reminders with ones for the new time and announce the move.

    Pending reminders that the new time would produce again are kept.
    """
    now = now or utcnow()
    logger.info(
        "handle_appointment_rescheduled: appointment=%s old_start=%s new_start=%s",
        appointment.id, to_utc_iso(old_start_at), to_utc_iso(appointment.start_at),
    )
    await cancel_pending_jobs(db, appointment.id, keep_keys=reminder_keys(appointment, now))
    link = await _appointment_link(db, appointment, now)

    notice = await enqueue_immediate(
        db, appointment, NotificationType.RESCHEDULED,
        {
            "link": link,
            "order_nbrs": order_nbrs,
            "old_start_at": to_utc_iso(old_start_at),
            "old_end_at": to_utc_iso(old_end_at),
            "staff_initiated": staff_initiated,
        },
        ignore_cap=ignore_cap, now=now,
    )
    reminders = await _enqueue_reminders(db, appointment, link, order_nbrs, ignore_cap, now)
    await db.commit()

    await dispatch_due_jobs(db, appointment, [notice, *reminders], senders, now)
    return [notice, *reminders]


# ---------------------------------------------------------------------------
# 4. Completed
# ---------------------------------------------------------------------------

async def handle_appointment_completed(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> AppointmentNotificationJob:
    now = now or utcnow()
    logger.info("handle_appointment_completed: appointment=%s", appointment.id)
    await cancel_pending_jobs(db, appointment.id)
    link = await _appointment_link(db, appointment, now)
    return await send_immediate(
        db, appointment, NotificationType.COMPLETED,
        {"link": link, "order_nbrs": order_nbrs, "staff_initiated": staff_initiated},
        senders=senders, ignore_cap=ignore_cap, now=now,
    )


# ---------------------------------------------------------------------------
# 5. Order list changed
# ---------------------------------------------------------------------------

async def handle_appointment_order_list_changed(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> AppointmentNotificationJob:
    now = now or utcnow()
    logger.info(
        "handle_appointment_order_list_changed: appointment=%s orders=%d",
        appointment.id, len(order_nbrs),
    )
    link = await _appointment_link(db, appointment, now)
    return await send_immediate(
        db, appointment, NotificationType.ORDER_LIST_CHANGED,
        {"link": link, "order_nbrs": order_nbrs, "staff_initiated": staff_initiated},
        senders=senders, ignore_cap=ignore_cap, now=now,
    )


# ---------------------------------------------------------------------------
# 6. Ready for pickup
# ---------------------------------------------------------------------------

async def handle_appointment_ready(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
) -> AppointmentNotificationJob:
    """Ready notice a day before the pickup, or now if that moment has passed."""
    now = now or utcnow()
    link = await _appointment_link(db, appointment, now)
    day_before = appointment.start_at.astimezone(timezone.utc) - READY_WINDOW
    scheduled_at = next_allowed_instant(max(now, day_before))

    job = await enqueue_job(
        db,
        appointment.id,
        NotificationType.READY_FOR_PICKUP,
        scheduled_at,
        payload_snapshot={
            "link": link,
            "order_nbrs": order_nbrs,
            "ignore_cap": bool(ignore_cap),
            "staff_initiated": staff_initiated,
        },
    )
    await db.commit()
    logger.info(
        "handle_appointment_ready: appointment=%s scheduled_at=%s",
        appointment.id, to_utc_iso(scheduled_at),
    )

    await dispatch_due_jobs(db, appointment, [job], senders, now)
    return job
