"""
Daily no-show sweep.

Runs once per business day inside the configured evening window. Pickups
that ended earlier today without being completed or cancelled are marked
NoShow, their pending jobs are cancelled, and the customer gets a direct
"we missed you" message. The messages bypass the job queue, so the cap and
quiet-hours rules do not apply to them.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.config import get_settings
from willcall.models.appointment import PickupAppointment
from willcall.models.enums import AppointmentStatus
from willcall.models.job_state import JobState
from willcall.notifications.dispatch import ChannelSenders, email_destination, sms_destination
from willcall.notifications.links import build_reschedule_link
from willcall.notifications.scheduler import cancel_pending_jobs
from willcall.notifications.templates.email import build_no_show_email
from willcall.notifications.templates.sms import build_no_show_sms
from willcall.utils.business_time import (
    business_date_key,
    business_minutes_since_midnight,
    start_of_business_day,
    utcnow,
)

logger = logging.getLogger(__name__)

JOB_NAME = "appointment-no-show-sweep"

SWEEP_STATUSES = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.IN_PROGRESS.value,
    AppointmentStatus.READY.value,
    AppointmentStatus.NO_SHOW.value,
)


def in_run_window(now: datetime) -> bool:
    settings = get_settings()
    start = settings.NO_SHOW_SWEEP_HOUR * 60 + settings.NO_SHOW_SWEEP_MINUTE
    end = start + settings.NO_SHOW_SWEEP_WINDOW_MINUTES
    return start <= business_minutes_since_midnight(now) < end


async def claim_daily_run(db: AsyncSession, now: datetime, name: str = JOB_NAME) -> bool:
    """Atomically record today's run; False if today was already claimed.

    Two workers racing for the same day both issue the upsert, and only the
    one whose row change succeeds gets a row back.
    """
    day = business_date_key(now)
    stmt = pg_insert(JobState).values(name=name, last_run_at=now, last_run_date=day)
    stmt = stmt.on_conflict_do_update(
        index_elements=["name"],
        set_={"last_run_at": now, "last_run_date": day},
        where=JobState.last_run_date.is_distinct_from(stmt.excluded.last_run_date),
    ).returning(JobState.name)
    result = await db.execute(stmt)
    claimed = result.scalar_one_or_none() is not None
    await db.commit()
    return claimed


async def should_run(db: AsyncSession, now: datetime) -> bool:
    if not in_run_window(now):
        return False
    return await claim_daily_run(db, now)


async def load_no_show_candidates(db: AsyncSession, now: datetime) -> list[PickupAppointment]:
    result = await db.execute(
        select(PickupAppointment)
        .where(
            PickupAppointment.status.in_(SWEEP_STATUSES),
            PickupAppointment.end_at >= start_of_business_day(now),
            PickupAppointment.end_at < now,
        )
        .order_by(PickupAppointment.end_at.asc())
    )
    return list(result.scalars().all())


async def send_no_show_notifications(appointment, senders: ChannelSenders) -> dict:
    sent = {"email": False, "sms": False}
    order_nbrs = [o.order_nbr for o in (appointment.orders or [])]

    email_to = email_destination(appointment)
    if email_to:
        message = build_no_show_email(appointment.start_at, order_nbrs, build_reschedule_link())
        result = await senders.email.send(email_to, message.subject, message.html)
        sent["email"] = not result.get("skipped")

    sms_to = sms_destination(appointment)
    if sms_to:
        result = await senders.sms.send(sms_to, build_no_show_sms(appointment.start_at, order_nbrs))
        sent["sms"] = not result.get("skipped")

    return sent


async def run_no_show_sweep(
    db: AsyncSession,
    senders: ChannelSenders,
    now: Optional[datetime] = None,
) -> dict:
    """Run the sweep if it is due. Returns counters; ``ran`` is False when gated."""
    now = now or utcnow()
    summary = {"ran": False, "candidates": 0, "marked_no_show": 0, "emails": 0, "sms": 0, "failed": 0}

    if not await should_run(db, now):
        return summary
    summary["ran"] = True

    appointments = await load_no_show_candidates(db, now)
    summary["candidates"] = len(appointments)

    for appointment in appointments:
        if appointment.status != AppointmentStatus.NO_SHOW.value:
            appointment.status = AppointmentStatus.NO_SHOW.value
            summary["marked_no_show"] += 1
        await cancel_pending_jobs(db, appointment.id)
        await db.commit()

        try:
            sent = await send_no_show_notifications(appointment, senders)
        except Exception:
            logger.exception("run_no_show_sweep: notification failed for appointment %s", appointment.id)
            summary["failed"] += 1
            continue
        summary["emails"] += int(sent["email"])
        summary["sms"] += int(sent["sms"])

    await db.execute(
        update(JobState).where(JobState.name == JOB_NAME).values(last_run_at=utcnow())
    )
    await db.commit()

    logger.info(
        "run_no_show_sweep: candidates=%d marked=%d emails=%d sms=%d failed=%d",
        summary["candidates"], summary["marked_no_show"], summary["emails"], summary["sms"], summary["failed"],
    )
    return summary
