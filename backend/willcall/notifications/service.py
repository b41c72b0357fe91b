"""
Public entry points for appointment notifications.

Callers (routes, staff tools, sync jobs) use these rather than the handlers
in ``scheduler``. They encode who triggered the event:

- customer calls respect the notification cap;
- staff calls set ``ignore_cap`` and ``staff_initiated``;
- ``notify_customer=False`` makes a notify call a no-op, while
  ``cancel_appointment_silently`` always cancels jobs but never sends.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from willcall.notifications.dispatch import ChannelSenders
from willcall.notifications.scheduler import (
    cancel_pending_jobs,
    handle_appointment_cancelled,
    handle_appointment_completed,
    handle_appointment_order_list_changed,
    handle_appointment_ready,
    handle_appointment_rescheduled,
    handle_appointment_scheduled,
)

logger = logging.getLogger(__name__)


async def notify_customer_scheduled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    return await handle_appointment_scheduled(db, appointment, order_nbrs, senders=senders, now=now)


async def notify_staff_scheduled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    return await handle_appointment_scheduled(
        db, appointment, order_nbrs,
        ignore_cap=True, staff_initiated=True, senders=senders, now=now,
    )


async def notify_customer_cancelled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    return await handle_appointment_cancelled(
        db, appointment, order_nbrs, should_notify=True, senders=senders, now=now,
    )


async def cancel_appointment_silently(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    *,
    now: Optional[datetime] = None,
):
    return await handle_appointment_cancelled(
        db, appointment, order_nbrs, should_notify=False, now=now,
    )


async def notify_staff_cancelled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    cancel_reason: Optional[str],
    notify_customer: bool,
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    """Staff cancellations only notify when asked to and a reason is given."""
    return await handle_appointment_cancelled(
        db, appointment, order_nbrs,
        should_notify=bool(notify_customer and cancel_reason),
        cancel_reason=cancel_reason,
        ignore_cap=True,
        staff_initiated=True,
        senders=senders,
        now=now,
    )


async def notify_appointment_rescheduled(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    old_start_at: datetime,
    old_end_at: datetime,
    notify_customer: bool,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    if not notify_customer:
        logger.debug("notify_appointment_rescheduled: notify_customer is off for %s", appointment.id)
        return None
    return await handle_appointment_rescheduled(
        db, appointment, order_nbrs,
        old_start_at=old_start_at,
        old_end_at=old_end_at,
        ignore_cap=ignore_cap,
        staff_initiated=staff_initiated,
        senders=senders,
        now=now,
    )


async def notify_appointment_completed(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    notify_customer: bool,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    if not notify_customer:
        return None
    return await handle_appointment_completed(
        db, appointment, order_nbrs,
        ignore_cap=ignore_cap, staff_initiated=staff_initiated, senders=senders, now=now,
    )


async def notify_order_list_changed(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    notify_customer: bool,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    if not notify_customer:
        return None
    return await handle_appointment_order_list_changed(
        db, appointment, order_nbrs,
        ignore_cap=ignore_cap, staff_initiated=staff_initiated, senders=senders, now=now,
    )


async def notify_appointment_ready(
    db: AsyncSession,
    appointment,
    order_nbrs: list[str],
    notify_customer: bool,
    ignore_cap: bool = False,
    staff_initiated: bool = False,
    *,
    senders: Optional[ChannelSenders] = None,
    now: Optional[datetime] = None,
):
    if not notify_customer:
        return None
    return await handle_appointment_ready(
        db, appointment, order_nbrs,
        ignore_cap=ignore_cap, staff_initiated=staff_initiated, senders=senders, now=now,
    )


async def cancel_appointment_notifications(db: AsyncSession, appointment_id) -> int:
    count = await cancel_pending_jobs(db, appointment_id)
    await db.commit()
    return count
