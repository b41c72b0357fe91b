"""
Sending a single notification job.

``send_job`` renders the job for each enabled channel, calls the senders and
records the outcome on the job. Channel eligibility is always taken from the
live appointment (opt-in flags, opt-out, destination), never from the
snapshot.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from willcall.locations import get_pickup_location
from willcall.models.enums import NotificationChannel, NotificationJobStatus
from willcall.notifications.links import (
    build_appointment_sms_link,
    build_unsubscribe_link,
    token_from_link,
)
from willcall.notifications.providers.email import EmailSender
from willcall.notifications.providers.sms import SmsSender
from willcall.notifications.templates.email import build_email_message
from willcall.notifications.templates.sms import apply_sms_compliance, build_sms_message
from willcall.utils.business_time import from_utc_iso, utcnow

logger = logging.getLogger(__name__)

SMS_CHANNELS = frozenset({NotificationChannel.SMS.value, NotificationChannel.BOTH.value})
EMAIL_CHANNELS = frozenset({NotificationChannel.EMAIL.value, NotificationChannel.BOTH.value})


@dataclass
class ChannelSenders:
    sms: Any = field(default=None)
    email: Any = field(default=None)

    @classmethod
    def from_settings(cls) -> "ChannelSenders":
        return cls(sms=SmsSender(), email=EmailSender())


def _optional_instant(value: Optional[str]) -> Optional[datetime]:
    return from_utc_iso(value) if value else None


def sms_destination(appointment) -> Optional[str]:
    if not appointment.sms_opt_in or appointment.sms_opt_out_at:
        return None
    return appointment.sms_opt_in_phone or appointment.customer_phone or None


def email_destination(appointment) -> Optional[str]:
    if not appointment.email_opt_in:
        return None
    return appointment.email_opt_in_email or appointment.customer_email or None


def build_payload(appointment, job, link: str) -> dict:
    """Merge the job's snapshot with live appointment data for rendering."""
    snapshot = job.payload_snapshot or {}
    order_nbrs = snapshot.get("order_nbrs") or [o.order_nbr for o in (appointment.orders or [])]
    token = token_from_link(link)
    location = get_pickup_location(appointment.location_id)

    return {
        "appointment_id": str(appointment.id),
        "location_id": appointment.location_id,
        "location_name": location.name if location else appointment.location_id,
        "location_address": location.address if location else None,
        "location_instructions": location.instructions if location else None,
        "start_at": appointment.start_at,
        "end_at": appointment.end_at,
        "order_nbrs": order_nbrs,
        "link": link,
        "sms_link": snapshot.get("sms_link") or (build_appointment_sms_link(token) if token else ""),
        "unsubscribe_link": (
            snapshot.get("unsubscribe_link")
            or (build_unsubscribe_link(appointment.id, token) if token else "")
        ),
        "old_start_at": _optional_instant(snapshot.get("old_start_at")),
        "old_end_at": _optional_instant(snapshot.get("old_end_at")),
        "cancel_reason": snapshot.get("cancel_reason"),
        "staff_initiated": bool(snapshot.get("staff_initiated")),
    }


async def send_job(
    db: AsyncSession,
    job,
    appointment,
    senders: ChannelSenders,
    now: Optional[datetime] = None,
) -> None:
    """Send ``job`` on every enabled channel and mark it Sent.

    Any failure, including a snapshot without a link, marks the job Failed
    and is re-raised.
    """
    now = now or utcnow()
    try:
        link = (job.payload_snapshot or {}).get("link")
        if not link:
            raise ValueError(f"Missing secure link for notification job {job.id}")
        payload = build_payload(appointment, job, link)

        logger.info(
            "send_job: job=%s type=%s channel=%s appointment=%s",
            job.id, job.type, job.channel, appointment.id,
        )

        sms_to = sms_destination(appointment)
        if job.channel in SMS_CHANNELS and sms_to:
            body = apply_sms_compliance(
                build_sms_message(job.type, payload),
                include_stop_line=appointment.sms_first_sent_at is None,
            )
            result = await senders.sms.send(sms_to, body)
            # A skipped send never reached the customer, so the STOP line is still owed
            if appointment.sms_first_sent_at is None and not (result or {}).get("skipped"):
                appointment.sms_first_sent_at = now

        email_to = email_destination(appointment)
        if job.channel in EMAIL_CHANNELS and email_to:
            message = build_email_message(job.type, payload)
            await senders.email.send(email_to, message.subject, message.html)

        job.status = NotificationJobStatus.SENT.value
        job.attempt_count = (job.attempt_count or 0) + 1
        job.sent_at = now
        job.last_attempt_at = now
        await db.commit()
    except Exception:
        logger.exception("send_job: job %s failed", job.id)
        job.status = NotificationJobStatus.FAILED.value
        job.attempt_count = (job.attempt_count or 0) + 1
        job.last_attempt_at = now
        await db.commit()
        raise
