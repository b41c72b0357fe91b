"""
Reminder instants for an appointment start.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from willcall.config import get_settings
from willcall.models.enums import NotificationType
from willcall.utils.business_time import (
    is_quiet_hours,
    previous_business_day_at_9am,
    same_time_previous_day,
    utcnow,
)


def one_day_reminder_at(start_at: datetime, strategy: Optional[str] = None) -> datetime:
    strategy = strategy or get_settings().NOTIFICATIONS_ONE_DAY_REMINDER
    if strategy == "business_day_9am":
        return previous_business_day_at_9am(start_at)
    return same_time_previous_day(start_at)


def one_hour_reminder_at(start_at: datetime) -> datetime:
    # Elapsed-time offset, so a DST change cannot shift it
    return start_at.astimezone(timezone.utc) - timedelta(hours=1)


def compute_reminder_times(
    start_at: datetime,
    now: Optional[datetime] = None,
    strategy: Optional[str] = None,
) -> list[tuple[NotificationType, datetime]]:
    """Reminder jobs worth enqueuing for ``start_at``.

    A reminder is dropped when its instant is not in the future or falls in
    quiet hours, since the runner would only ever skip it. An appointment
    booked within its last hour gets the 1-hour reminder at ``now`` instead,
    unless ``now`` itself is in quiet hours.
    """
    now = now or utcnow()
    one_hour_at = one_hour_reminder_at(start_at)
    candidates = [
        (NotificationType.REMINDER_1_DAY, one_day_reminder_at(start_at, strategy)),
        (NotificationType.REMINDER_1_HOUR, one_hour_at),
    ]
    times = [
        (kind, at) for kind, at in candidates
        if at > now and not is_quiet_hours(at)
    ]
    if one_hour_at <= now < start_at and not is_quiet_hours(now):
        times.append((NotificationType.REMINDER_1_HOUR, now))
    return times
