"""
Secure link builders for outbound notifications.

The manage link points at the customer frontend; the unsubscribe and SMS
short links point at the backend and are empty when no backend URL is
configured.
"""

from typing import Optional
from urllib.parse import parse_qs, quote, urlsplit

from willcall.config import get_settings


def _frontend_base() -> str:
    return get_settings().FRONTEND_URL.rstrip("/")


def _backend_base() -> str:
    return get_settings().BACKEND_URL.rstrip("/")


def build_appointment_link(appointment_id, token: str) -> str:
    return f"{_frontend_base()}/appointments/{appointment_id}?token={quote(token, safe='')}"


def build_unsubscribe_link(appointment_id, token: str) -> str:
    base = _backend_base()
    if not base:
        return ""
    return f"{base}/api/public/appointments/{appointment_id}/unsubscribe?token={quote(token, safe='')}"


def build_appointment_sms_link(token: str) -> str:
    base = _backend_base()
    if not base:
        return ""
    return f"{base}/api/public/appointments/short/{quote(token, safe='')}"


def token_from_link(link: str) -> Optional[str]:
    """Pull the ``token`` query parameter back out of a manage link."""
    try:
        values = parse_qs(urlsplit(link).query).get("token")
    except ValueError:
        return None
    return values[0] if values else None


def build_reschedule_link() -> str:
    base = _frontend_base()
    return f"{base}/" if base else ""
