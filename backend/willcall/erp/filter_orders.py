"""
Order delta filter: turns raw ERP sales-order rows into canonical order records.

ERP rows arrive in more than one shape: OData-style ``{"Field": {"value": X}}``
wrappers, flat ``{"Field": X}`` values, and several historical camelCase
aliases. Each canonical field is decoded through an ordered tuple of
accessors (``FIELD_ACCESSORS``); the first accessor that yields a non-None
value wins.

Filtering never raises on malformed rows: they are dropped and counted.
"""

import logging
import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from willcall.utils.business_time import BUSINESS_TZ, one_business_year_ago, to_utc_iso, utcnow

logger = logging.getLogger(__name__)

EXCLUDED_PREFIXES = ("QT", "RMA")  # quotes and RMAs are not will-call orders

Accessor = Callable[[Mapping], Any]


def _unwrap(value: Any) -> Any:
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def field_value(key: str) -> Accessor:
    """Top-level field, flat or ``{"value": ...}``-wrapped."""
    def read(row: Mapping) -> Any:
        return _unwrap(row.get(key))
    read.__qualname__ = f"field_value({key!r})"
    return read


def nested_value(*keys: str) -> Accessor:
    """Field reached through nested mappings, unwrapped at the leaf."""
    def read(row: Mapping) -> Any:
        current: Any = row
        for key in keys:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        return _unwrap(current)
    read.__qualname__ = f"nested_value({'.'.join(keys)!r})"
    return read


FIELD_ACCESSORS: dict[str, tuple[Accessor, ...]] = {
    "order_nbr": (field_value("OrderNbr"), field_value("orderNbr"), field_value("nbr")),
    "status": (field_value("Status"), field_value("status")),
    "location_id": (field_value("LocationID"), field_value("locationId")),
    "requested_on": (
        field_value("RequestedOn"),
        field_value("requestedOn"),
        field_value("deliveryDate"),
    ),
    "ship_via": (field_value("ShipVia"), field_value("shipVia")),
    "job_name": (field_value("JobName"), field_value("jobName")),
    "customer_name": (field_value("CustomerName"), field_value("customerName")),
    "buyer_group": (
        nested_value("custom", "Document", "AttributeBUYERGROUP"),
        nested_value("Document", "AttributeBUYERGROUP"),
        field_value("buyerGroup"),
        field_value("BuyerGroup"),
    ),
    "note_id": (field_value("NoteID"), field_value("noteId"), field_value("noteID")),
}


def decode_field(row: Mapping, name: str) -> Any:
    for accessor in FIELD_ACCESSORS[name]:
        value = accessor(row)
        if value is not None:
            return value
    return None


def parse_requested_on(value: Any) -> Optional[datetime]:
    """Parse an ERP timestamp; ``None`` when it is not a usable date.

    Naive values are business-local. Numbers are epoch milliseconds.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=BUSINESS_TZ)
    return parsed


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    return str(value)


@dataclass
class OrderRecord:
    order_nbr: str
    status: str
    location_id: Optional[str]
    requested_on: str  # UTC ISO-8601 with milliseconds, see to_utc_iso
    ship_via: Optional[str] = None
    job_name: Optional[str] = None
    customer_name: Optional[str] = None
    buyer_group: Optional[str] = None
    note_id: Optional[str] = None

    @property
    def requested_on_at(self) -> datetime:
        return datetime.fromisoformat(self.requested_on.replace("Z", "+00:00"))


@dataclass
class FilterCounts:
    """Operational counters.

    The drop counters are taken before de-duplication while ``kept`` is the
    de-duplicated count, so they do not have to add up to ``total_from_erp``.
    """

    total_from_erp: int = 0
    dropped_missing: int = 0
    dropped_excluded: int = 0
    dropped_old: int = 0
    kept: int = 0


@dataclass
class FilterResult:
    kept: list[OrderRecord] = field(default_factory=list)
    counts: FilterCounts = field(default_factory=FilterCounts)
    cutoff: Optional[datetime] = None


def filter_orders(raw_rows: Optional[Iterable[Any]], now: Optional[datetime] = None) -> FilterResult:
    """Normalize, exclude, age-filter and de-duplicate ERP order rows.

    1. ``QT``/``RMA`` order numbers are counted as ``dropped_excluded``,
       even when the rest of the row is unusable;
    2. rows missing order number, status or a parseable requested-on date
       are counted as ``dropped_missing``;
    3. records requested before one business year ago are ``dropped_old``
       (the cutoff itself is kept);
    4. per order number the latest ``requested_on`` wins; ties keep the
       first-seen record.
    """
    rows = list(raw_rows) if raw_rows is not None else []
    cutoff = one_business_year_ago(now or utcnow())
    counts = FilterCounts(total_from_erp=len(rows))

    normalized: list[OrderRecord] = []
    for row in rows:
        if not isinstance(row, Mapping):
            counts.dropped_missing += 1
            continue

        order_nbr = _opt_str(decode_field(row, "order_nbr"))
        status = decode_field(row, "status")
        requested_raw = decode_field(row, "requested_on")

        # Quotes and RMAs are excluded whatever else the row carries
        if order_nbr and order_nbr.startswith(EXCLUDED_PREFIXES):
            counts.dropped_excluded += 1
            continue

        if not order_nbr or not status or not requested_raw:
            counts.dropped_missing += 1
            continue

        requested_on = parse_requested_on(requested_raw)
        if requested_on is None:
            counts.dropped_missing += 1
            continue

        normalized.append(OrderRecord(
            order_nbr=order_nbr,
            status=str(status).strip(),
            location_id=_opt_str(decode_field(row, "location_id")),
            requested_on=to_utc_iso(requested_on),
            ship_via=_opt_str(decode_field(row, "ship_via")),
            job_name=_opt_str(decode_field(row, "job_name")),
            customer_name=_opt_str(decode_field(row, "customer_name")),
            buyer_group=_opt_str(decode_field(row, "buyer_group")),
            note_id=_opt_str(decode_field(row, "note_id")),
        ))

    cutoff_iso = to_utc_iso(cutoff)
    by_nbr: dict[str, OrderRecord] = {}
    for record in normalized:
        if record.requested_on < cutoff_iso:
            counts.dropped_old += 1
            continue
        previous = by_nbr.get(record.order_nbr)
        if previous is None or record.requested_on > previous.requested_on:
            by_nbr[record.order_nbr] = record

    kept = list(by_nbr.values())
    counts.kept = len(kept)

    logger.debug(
        "filter_orders: total=%d missing=%d excluded=%d old=%d kept=%d cutoff=%s",
        counts.total_from_erp, counts.dropped_missing, counts.dropped_excluded,
        counts.dropped_old, counts.kept, cutoff_iso,
    )
    return FilterResult(kept=kept, counts=counts, cutoff=cutoff)
