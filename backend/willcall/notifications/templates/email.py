"""
Email subject and HTML body per notification type.

Bodies are plain inline-styled HTML so they render the same in every mail
client. All interpolated values are escaped.
"""

from dataclasses import dataclass
from html import escape
from typing import Optional

from willcall.models.enums import NotificationType
from willcall.notifications.format import format_business_datetime

BRAND_NAME = "MLD Will Call"
BRAND_COLOR = "#111827"
ACCENT_COLOR = "#0f766e"

STAFF_NOTE = "This update was made by our staff to keep your pickup on track."


@dataclass
class EmailMessage:
    subject: str
    html: str


def _orders_text(order_nbrs: Optional[list[str]]) -> str:
    return ", ".join(order_nbrs) if order_nbrs else "(none)"


def render_email(
    *,
    title: str,
    preheader: str,
    message: str,
    when: str,
    orders: str,
    link: str,
    button_label: str = "Manage appointment",
    footer_note: str = "This link is secure and can be used to view or update your appointment.",
    unsubscribe_link: Optional[str] = None,
    staff_note: Optional[str] = None,
) -> str:
    staff_html = (
        f'<p style="margin:0 0 16px;font-size:13px;color:#6b7280;">{escape(staff_note)}</p>'
        if staff_note else ""
    )
    unsubscribe_html = (
        f'<div style="margin-top:10px;"><a href="{escape(unsubscribe_link)}" '
        f'style="color:#6b7280;">Unsubscribe from email updates</a></div>'
        if unsubscribe_link else ""
    )
    return (
        "<!doctype html>\n"
        '<html><head><meta charset="utf-8" />'
        f"<title>{escape(title)}</title></head>\n"
        '<body style="margin:0;background:#f3f4f6;font-family:Arial,Helvetica,sans-serif;">\n'
        f'<span style="display:none;">{escape(preheader)}</span>\n'
        '<div style="max-width:640px;margin:24px auto;background:#ffffff;border-radius:16px;padding:28px;">\n'
        f'<div style="font-size:18px;font-weight:700;color:{BRAND_COLOR};">{BRAND_NAME}</div>\n'
        f'<h1 style="font-size:22px;color:{BRAND_COLOR};">{escape(title)}</h1>\n'
        f'<p style="font-size:15px;color:#374151;">{escape(message)}</p>\n'
        f"{staff_html}\n"
        '<div style="background:#f8fafc;border:1px solid #e5e7eb;border-radius:12px;padding:16px;margin-bottom:20px;">'
        f'<div style="font-size:13px;color:#6b7280;">Appointment</div>'
        f'<div style="font-size:16px;font-weight:600;">{escape(when)}</div>'
        f'<div style="font-size:13px;color:#6b7280;">Orders</div>'
        f'<div style="font-size:14px;">{escape(orders)}</div></div>\n'
        f'<a href="{escape(link)}" style="display:inline-block;background:{ACCENT_COLOR};color:#ffffff;'
        f'padding:12px 18px;border-radius:10px;text-decoration:none;">{escape(button_label)}</a>\n'
        f'<p style="font-size:12px;color:#6b7280;">{escape(footer_note)}</p>\n'
        '<div style="border-top:1px solid #e5e7eb;padding-top:16px;font-size:12px;color:#9ca3af;">'
        f"If you did not request this, you can ignore this email.{unsubscribe_html}</div>\n"
        "</div>\n</body></html>"
    )


# (subject, title, preheader, message); {when} and {old_when} are filled in
_COPY = {
    NotificationType.SCHEDULED_CONFIRM: (
        "Pickup scheduled", "Pickup scheduled",
        "Your pickup is scheduled for {when}.",
        "Your pickup appointment is confirmed for {when}.",
    ),
    NotificationType.REMINDER_1_DAY: (
        "Pickup reminder (1 day)", "Pickup reminder",
        "Reminder: your pickup is tomorrow at {when}.",
        "Reminder: your pickup is scheduled for tomorrow at {when}.",
    ),
    NotificationType.REMINDER_1_HOUR: (
        "Pickup reminder (1 hour)", "Pickup reminder",
        "Your pickup is in 1 hour at {when}.",
        "Reminder: your pickup is in one hour at {when}.",
    ),
    NotificationType.RESCHEDULED: (
        "Pickup rescheduled", "Pickup rescheduled",
        "Your pickup moved from {old_when} to {when}.",
        "Your pickup was rescheduled from {old_when} to {when}.",
    ),
    NotificationType.CANCELLED: (
        "Pickup cancelled", "Pickup cancelled",
        "Your pickup on {when} was cancelled.",
        "Your pickup scheduled for {when} was cancelled.",
    ),
    NotificationType.COMPLETED: (
        "Pickup completed", "Pickup completed",
        "Your pickup for {when} is marked complete.",
        "Your pickup appointment for {when} is marked complete.",
    ),
    NotificationType.ORDER_LIST_CHANGED: (
        "Pickup orders updated", "Pickup orders updated",
        "Your pickup order list has been updated.",
        "Your pickup order list has been updated. Please review the orders below.",
    ),
}
_DEFAULT_COPY = (
    "Pickup update", "Pickup update",
    "Pickup update for {when}.",
    "There is an update to your pickup appointment for {when}.",
)


def build_email_message(notification_type, payload: dict) -> EmailMessage:
    kind = NotificationType(notification_type)
    when = format_business_datetime(payload["start_at"])
    old_start = payload.get("old_start_at")
    old_when = format_business_datetime(old_start) if old_start else "previous time"

    subject, title, preheader, message = _COPY.get(kind, _DEFAULT_COPY)
    preheader = preheader.format(when=when, old_when=old_when)
    message = message.format(when=when, old_when=old_when)
    if kind == NotificationType.CANCELLED and payload.get("cancel_reason"):
        message = f"{message} Reason: {payload['cancel_reason']}."
    if payload.get("location_name") and kind != NotificationType.CANCELLED:
        location = payload["location_name"]
        if payload.get("location_address"):
            location = f"{location} - {payload['location_address']}"
        message = f"{message} Pickup location: {location}."

    html = render_email(
        title=title,
        preheader=preheader,
        message=message,
        when=when,
        orders=_orders_text(payload.get("order_nbrs")),
        link=payload["link"],
        unsubscribe_link=payload.get("unsubscribe_link") or None,
        staff_note=STAFF_NOTE if payload.get("staff_initiated") else None,
    )
    return EmailMessage(subject=subject, html=html)


def build_no_show_email(start_at, order_nbrs: Optional[list[str]], link: str) -> EmailMessage:
    when = format_business_datetime(start_at)
    html = render_email(
        title="We missed you",
        preheader=f"We missed you at your pickup on {when}.",
        message=(
            f"We didn't see you at your pickup scheduled for {when}. Your product is being "
            "returned to stock, so please reschedule as soon as possible."
        ),
        when=when,
        orders=_orders_text(order_nbrs),
        link=link,
        button_label="Reschedule pickup",
        footer_note="This link is secure and can be used to reschedule your pickup.",
    )
    return EmailMessage(subject="We missed you at pickup", html=html)
