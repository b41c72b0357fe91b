"""
SMS text per notification type.

``payload`` is the dict produced by ``dispatch.build_payload``: datetimes are
already parsed and ``order_nbrs`` is a list.
"""

from willcall.models.enums import NotificationType
from willcall.notifications.format import format_business_datetime, format_order_list

BRAND_PREFIX = "MLD Will Call:"
STOP_LINE = "Reply STOP to opt out. Msg & data rates may apply."


def _location_text(payload: dict) -> str:
    name = payload.get("location_name")
    address = payload.get("location_address")
    line = f"{name} - {address}" if name and address else (address or name)
    return f" Pickup location: {line}." if line else ""


def build_sms_message(notification_type, payload: dict) -> str:
    kind = NotificationType(notification_type)
    when = format_business_datetime(payload["start_at"])
    orders = format_order_list(payload.get("order_nbrs"))
    link = payload["link"]
    location = _location_text(payload)

    if kind == NotificationType.SCHEDULED_CONFIRM:
        return f"{BRAND_PREFIX} Your pickup is scheduled for {when}.{location} {orders}. Manage: {link}"
    if kind == NotificationType.REMINDER_1_DAY:
        return f"{BRAND_PREFIX} Reminder: your pickup is tomorrow at {when}.{location} {orders}. Manage: {link}"
    if kind == NotificationType.REMINDER_1_HOUR:
        return f"{BRAND_PREFIX} Reminder: your pickup is in 1 hour at {when}.{location} {orders}. Manage: {link}"
    if kind == NotificationType.RESCHEDULED:
        old_start = payload.get("old_start_at")
        old_when = format_business_datetime(old_start) if old_start else "previous time"
        return (
            f"{BRAND_PREFIX} Your pickup was rescheduled from {old_when} to {when}.{location} "
            f"{orders}. Manage: {link}"
        )
    if kind == NotificationType.CANCELLED:
        reason = f" Reason: {payload['cancel_reason']}" if payload.get("cancel_reason") else ""
        return f"{BRAND_PREFIX} Your pickup on {when} was cancelled.{reason} Manage: {link}"
    if kind == NotificationType.COMPLETED:
        return f"{BRAND_PREFIX} Your pickup for {when} is marked complete. {orders}. Manage: {link}"
    if kind == NotificationType.ORDER_LIST_CHANGED:
        return f"{BRAND_PREFIX} Your pickup order list was updated. {orders}. Manage: {link}"
    if kind == NotificationType.READY_FOR_PICKUP:
        return (
            f"{BRAND_PREFIX} Your pickup is prepared. Our team has pulled your items for your "
            f"scheduled pickup. {orders}. Manage: {link}"
        )
    return f"{BRAND_PREFIX} Pickup update: {when}. {orders}. Manage: {link}"


def apply_sms_compliance(message: str, include_stop_line: bool) -> str:
    """Append the opt-out line; carriers require it on the first message."""
    if include_stop_line:
        return f"{message} {STOP_LINE}"
    return message


def build_no_show_sms(start_at, order_nbrs=None) -> str:
    when = format_business_datetime(start_at)
    return (
        f"We missed you at your pickup on {when}. {format_order_list(order_nbrs)} "
        "Your items are being returned to stock. Please reschedule ASAP."
    )
