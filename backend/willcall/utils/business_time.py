"""
Business-timezone helpers.

Every appointment-facing and ERP-facing time computation is anchored to the
single business timezone (``willcall.config.BUSINESS_TIMEZONE``), never to
server-local time. Functions accept timezone-aware datetimes ("instants") and
return timezone-aware UTC datetimes unless noted otherwise. Naive datetimes
are rejected with ``ValueError``.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from willcall.config import BUSINESS_TIMEZONE

BUSINESS_TZ = ZoneInfo(BUSINESS_TIMEZONE)

# Quiet hours are [21:00, 07:00) business-local
QUIET_HOURS_START = 21
QUIET_HOURS_END = 7

ERP_WINDOW_HOUR = 3


def _require_instant(instant: datetime) -> datetime:
    if not isinstance(instant, datetime):
        raise ValueError(f"expected a datetime, got {type(instant).__name__}")
    if instant.tzinfo is None or instant.utcoffset() is None:
        raise ValueError(f"naive datetime is not an instant: {instant!r}")
    return instant


def _local_at(day: date, hour: int = 0, minute: int = 0) -> datetime:
    """UTC instant of ``hour:minute`` business-local on calendar ``day``."""
    return datetime.combine(day, time(hour, minute), tzinfo=BUSINESS_TZ).astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_business_local(instant: datetime) -> datetime:
    return _require_instant(instant).astimezone(BUSINESS_TZ)


def business_date_key(instant: datetime) -> str:
    """Business-local calendar date as ``YYYY-MM-DD``."""
    return to_business_local(instant).date().isoformat()


def to_utc_iso(instant: datetime) -> str:
    """``2024-03-10T01:00:00.000Z``. Fixed width, so strings sort in time order."""
    utc = _require_instant(instant).astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def start_of_business_day(instant: datetime) -> datetime:
    return _local_at(to_business_local(instant).date())


def one_business_year_ago(instant: datetime) -> datetime:
    """Start of the business day, one calendar year back.

    Feb 29 has no counterpart in the previous year and rolls over to Mar 1.
    """
    day = to_business_local(instant).date()
    try:
        prior = day.replace(year=day.year - 1)
    except ValueError:
        prior = date(day.year - 1, 3, 1)
    return _local_at(prior)


def _offset_literal(local: datetime) -> str:
    raw = local.strftime("%z")  # e.g. -0700
    return f"{raw[:3]}:{raw[3:]}"


def business_day_window_start(instant: datetime, hour: int = ERP_WINDOW_HOUR) -> datetime:
    """Most recent ``hour:00`` business-local at or before ``instant``."""
    local = to_business_local(instant)
    day = local.date()
    if local.hour < hour:
        day -= timedelta(days=1)
    return _local_at(day, hour)


def to_datetimeoffset_literal(instant: datetime) -> str:
    """OData literal for ``instant`` expressed in business-local time."""
    local = to_business_local(instant).replace(microsecond=0)
    return f"datetimeoffset'{local.strftime('%Y-%m-%dT%H:%M:%S')}{_offset_literal(local)}'"


def business_day_window_start_literal(instant: datetime, hour: int = ERP_WINDOW_HOUR) -> str:
    """ERP delta-sync watermark, e.g. ``datetimeoffset'2024-03-10T03:00:00-07:00'``."""
    return to_datetimeoffset_literal(business_day_window_start(instant, hour))


def is_quiet_hours(instant: datetime) -> bool:
    hour = to_business_local(instant).hour
    return hour >= QUIET_HOURS_START or hour < QUIET_HOURS_END


def next_allowed_instant(instant: datetime) -> datetime:
    """``instant`` itself outside quiet hours, otherwise the next 07:00 local."""
    if not is_quiet_hours(instant):
        return instant
    local = to_business_local(instant)
    day = local.date()
    if local.hour >= QUIET_HOURS_START:
        day += timedelta(days=1)
    return _local_at(day, QUIET_HOURS_END)


def previous_business_day_at_9am(instant: datetime) -> datetime:
    day = to_business_local(instant).date() - timedelta(days=1)
    while day.weekday() >= 5:  # Sat, Sun
        day -= timedelta(days=1)
    return _local_at(day, 9)


def same_time_previous_day(instant: datetime) -> datetime:
    """Same business-local wall-clock time on the previous calendar day.

    Differs from ``instant - 24h`` across a DST change.
    """
    local = to_business_local(instant)
    prior = local.date() - timedelta(days=1)
    return datetime.combine(prior, local.time(), tzinfo=BUSINESS_TZ).astimezone(timezone.utc)


def business_minutes_since_midnight(instant: datetime) -> int:
    local = to_business_local(instant)
    return local.hour * 60 + local.minute


def from_utc_iso(value: str) -> datetime:
    """Inverse of ``to_utc_iso``; also accepts any offset-qualified ISO string."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _require_instant(datetime.fromisoformat(text))
