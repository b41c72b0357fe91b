"""
Shared fixtures. No test needs a real database, ERP, Twilio or Graph.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest

DENVER = ZoneInfo("America/Denver")


@pytest.fixture(autouse=True)
def _settings_env(monkeypatch):
    """Pin the settings every test relies on and reset the settings cache."""
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("FRONTEND_URL", "https://willcall.example.com")
    monkeypatch.setenv("BACKEND_URL", "")
    monkeypatch.setenv("NOTIFICATIONS_CAP", "10")
    monkeypatch.setenv("NOTIFICATIONS_ONE_DAY_REMINDER", "same_time")
    monkeypatch.setenv("NOTIFICATIONS_TEST_EMAIL", "")
    monkeypatch.setenv("NOTIFICATIONS_TEST_PHONE", "")
    for name in (
        "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER",
        "MS_GRAPH_TENANT_ID", "MS_GRAPH_CLIENT_ID", "MS_GRAPH_CLIENT_SECRET", "MS_GRAPH_FROM_EMAIL",
    ):
        monkeypatch.setenv(name, "")
    from willcall.config import clear_settings_cache
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture()
def mock_db():
    """Mock AsyncSession with execute, commit, rollback, flush and add."""
    db = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.flush = AsyncMock()
    db.add = MagicMock()
    return db


def local(year, month, day, hour=0, minute=0, second=0) -> datetime:
    """Business-local wall-clock time as an aware datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=DENVER)


def utc(year, month, day, hour=0, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def make_appointment(**overrides) -> SimpleNamespace:
    start_at = overrides.pop("start_at", local(2024, 3, 10, 18))
    fields = {
        "id": uuid4(),
        "baid": "BA0001",
        "start_at": start_at,
        "end_at": start_at + timedelta(minutes=30),
        "location_id": "slc-hq",
        "status": "Scheduled",
        "customer_first_name": "Dana",
        "customer_last_name": "Reyes",
        "customer_email": "dana@example.com",
        "customer_phone": "+18015550100",
        "sms_opt_in": True,
        "sms_opt_in_phone": None,
        "sms_opt_out_at": None,
        "sms_first_sent_at": None,
        "email_opt_in": False,
        "email_opt_in_email": None,
        "orders": [SimpleNamespace(order_nbr="SO-1001"), SimpleNamespace(order_nbr="SO-1002")],
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_job(appointment, **overrides) -> SimpleNamespace:
    fields = {
        "id": uuid4(),
        "appointment_id": appointment.id,
        "appointment": appointment,
        "type": "ScheduledConfirm",
        "channel": "Both",
        "scheduled_at": local(2024, 3, 1, 10),
        "status": "Pending",
        "payload_snapshot": {
            "link": f"https://willcall.example.com/appointments/{appointment.id}?token=tok123",
            "order_nbrs": ["SO-1001"],
        },
        "attempt_count": 0,
        "last_attempt_at": None,
        "sent_at": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def make_senders():
    from willcall.notifications.dispatch import ChannelSenders

    sms = MagicMock()
    sms.send = AsyncMock(return_value={"ok": True, "skipped": False})
    email = MagicMock()
    email.send = AsyncMock(return_value={"ok": True, "skipped": False})
    return ChannelSenders(sms=sms, email=email)
