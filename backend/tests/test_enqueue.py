"""
Tests for idempotent enqueue, access tokens, eligibility and reminder times.
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from conftest import local, utc


def _compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _scalar_result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    result.scalar.return_value = value
    return result


class TestIdempotencyKey:
    def test_format(self):
        from willcall.models.enums import NotificationType
        from willcall.notifications.enqueue import build_idempotency_key

        appointment_id = uuid4()
        key = build_idempotency_key(appointment_id, NotificationType.REMINDER_1_DAY, local(2024, 3, 9, 18))
        assert key == f"{appointment_id}:Reminder1Day:2024-03-10T01:00:00.000Z"

    def test_same_instant_in_any_timezone_gives_same_key(self):
        from willcall.notifications.enqueue import build_idempotency_key

        appointment_id = uuid4()
        assert build_idempotency_key(appointment_id, "Reminder1Hour", local(2024, 3, 10, 17)) == (
            build_idempotency_key(appointment_id, "Reminder1Hour", utc(2024, 3, 10, 23))
        )


class TestEnqueueJob:
    """Re-enqueuing the same (appointment, type, time) yields the same row."""

    async def test_second_call_returns_first_row_unchanged(self, mock_db):
        from willcall.notifications.enqueue import enqueue_job

        appointment_id = uuid4()
        scheduled_at = local(2024, 3, 10, 17)
        stored = SimpleNamespace(id=uuid4(), status="Pending", payload_snapshot={"link": "first"})

        mock_db.execute = AsyncMock(side_effect=[
            _scalar_result(stored.id),  # insert wrote a row
            _scalar_result(stored),
            _scalar_result(None),       # conflict, nothing written
            _scalar_result(stored),
        ])

        first = await enqueue_job(
            mock_db, appointment_id, "Reminder1Hour", scheduled_at, payload_snapshot={"link": "first"},
        )
        second = await enqueue_job(
            mock_db, appointment_id, "Reminder1Hour", scheduled_at, payload_snapshot={"link": "second"},
        )

        assert first is second
        assert second.payload_snapshot == {"link": "first"}

    async def test_insert_is_on_conflict_do_nothing(self, mock_db):
        from willcall.notifications.enqueue import enqueue_job

        stored = SimpleNamespace(id=uuid4())
        mock_db.execute = AsyncMock(side_effect=[_scalar_result(stored.id), _scalar_result(stored)])

        await enqueue_job(mock_db, uuid4(), "ScheduledConfirm", local(2024, 3, 1, 10))

        insert_sql = _compiled(mock_db.execute.await_args_list[0].args[0])
        assert "INSERT INTO appointment_notification_jobs" in insert_sql
        assert "ON CONFLICT (idempotency_key) DO NOTHING" in insert_sql
        mock_db.commit.assert_not_awaited()


class TestAccessTokens:
    def test_generate_token_is_48_hex_chars(self):
        from willcall.notifications.tokens import generate_token

        token = generate_token()
        assert len(token) == 48
        int(token, 16)

    def test_expiry_is_a_week_after_pickup(self):
        from willcall.notifications.tokens import compute_token_expiry

        issued = utc(2024, 3, 1)
        end_at = utc(2024, 3, 5)
        assert compute_token_expiry(end_at, issued) == end_at + timedelta(days=7)

    def test_expiry_capped_at_thirty_days(self):
        from willcall.notifications.tokens import compute_token_expiry

        issued = utc(2024, 3, 1)
        assert compute_token_expiry(utc(2024, 6, 1), issued) == issued + timedelta(days=30)

    async def test_rotate_revokes_then_inserts_without_committing(self, mock_db):
        from willcall.notifications.tokens import rotate_appointment_token

        calls = []
        mock_db.execute = AsyncMock(side_effect=lambda stmt: calls.append("revoke") or MagicMock(rowcount=1))
        mock_db.add = MagicMock(side_effect=lambda obj: calls.append("add"))

        appointment_id = uuid4()
        now = utc(2024, 3, 1)
        token = await rotate_appointment_token(mock_db, appointment_id, utc(2024, 3, 5), now=now)

        assert calls == ["revoke", "add"]
        revoke_sql = _compiled(mock_db.execute.await_args.args[0])
        assert "UPDATE appointment_access_tokens SET revoked_at" in revoke_sql
        assert "revoked_at IS NULL" in revoke_sql
        assert token.appointment_id == appointment_id
        assert token.revoked_at is None
        mock_db.flush.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    async def test_get_or_create_reuses_active_token(self, mock_db):
        from willcall.notifications.tokens import get_or_create_appointment_token

        active = SimpleNamespace(token="existing")
        mock_db.execute = AsyncMock(return_value=_scalar_result(active))

        token = await get_or_create_appointment_token(mock_db, uuid4(), utc(2024, 3, 5))

        assert token is active
        mock_db.add.assert_not_called()

    async def test_get_or_create_creates_when_none_active(self, mock_db):
        from willcall.notifications.tokens import get_or_create_appointment_token

        mock_db.execute = AsyncMock(return_value=_scalar_result(None))

        token = await get_or_create_appointment_token(mock_db, uuid4(), utc(2024, 3, 5), now=utc(2024, 3, 1))

        mock_db.add.assert_called_once_with(token)
        assert len(token.token) == 48


class TestEligibility:
    """Quiet-hours gate and the per-appointment cap."""

    def test_quiet_hours_gate(self):
        from willcall.notifications.eligibility import should_skip_for_quiet_hours

        assert should_skip_for_quiet_hours(local(2024, 3, 10, 22)) is True
        assert should_skip_for_quiet_hours(local(2024, 3, 10, 9)) is False

    @pytest.mark.parametrize("sent,expected", [(9, False), (10, True), (11, True)])
    async def test_cap_uses_configured_default(self, mock_db, sent, expected):
        from willcall.notifications.eligibility import has_reached_notification_cap

        mock_db.execute = AsyncMock(return_value=_scalar_result(sent))
        assert await has_reached_notification_cap(mock_db, uuid4()) is expected

    async def test_cap_override(self, mock_db):
        from willcall.notifications.eligibility import has_reached_notification_cap

        mock_db.execute = AsyncMock(return_value=_scalar_result(2))
        assert await has_reached_notification_cap(mock_db, uuid4(), cap=2) is True

    async def test_cap_counts_only_sent_jobs(self, mock_db):
        from willcall.notifications.eligibility import count_sent_notifications

        mock_db.execute = AsyncMock(return_value=_scalar_result(3))
        await count_sent_notifications(mock_db, uuid4())

        stmt = mock_db.execute.await_args.args[0]
        assert "Sent" in stmt.compile(dialect=postgresql.dialect()).params.values()


class TestReminderTimes:
    def test_both_reminders_in_future(self):
        from willcall.models.enums import NotificationType
        from willcall.notifications.reminders import compute_reminder_times

        times = compute_reminder_times(local(2024, 3, 10, 18), now=local(2024, 3, 1, 10))
        assert times == [
            (NotificationType.REMINDER_1_DAY, local(2024, 3, 9, 18)),
            (NotificationType.REMINDER_1_HOUR, local(2024, 3, 10, 17)),
        ]

    def test_past_reminders_dropped(self):
        from willcall.models.enums import NotificationType
        from willcall.notifications.reminders import compute_reminder_times

        times = compute_reminder_times(local(2024, 3, 10, 18), now=local(2024, 3, 10, 8))
        assert [kind for kind, _ in times] == [NotificationType.REMINDER_1_HOUR]

    def test_quiet_hour_reminders_dropped(self):
        from willcall.notifications.reminders import compute_reminder_times

        # 07:30 start: 1-hour reminder at 06:30 and 1-day at 07:30 the day before
        times = compute_reminder_times(local(2024, 3, 12, 7, 30), now=local(2024, 3, 1, 10))
        assert [at for _, at in times] == [local(2024, 3, 11, 7, 30)]

    def test_business_day_strategy(self):
        from willcall.notifications.reminders import compute_reminder_times

        times = compute_reminder_times(
            local(2024, 3, 11, 18), now=local(2024, 3, 1, 10), strategy="business_day_9am",
        )
        assert times[0][1] == local(2024, 3, 8, 9)

    def test_one_hour_reminder_is_elapsed_time_across_dst(self):
        from willcall.notifications.reminders import one_hour_reminder_at

        # 03:30 MDT, the first half hour after the spring-forward gap
        assert one_hour_reminder_at(local(2024, 3, 10, 3, 30)) == utc(2024, 3, 10, 8, 30)

    def test_reminder_keys_independent_of_start_zone(self):
        from willcall.notifications.enqueue import build_idempotency_key
        from willcall.notifications.reminders import compute_reminder_times

        now = utc(2024, 3, 1, 17)
        keys = [
            [build_idempotency_key("appt-1", kind, at) for kind, at in compute_reminder_times(start, now=now)]
            for start in (local(2024, 3, 10, 18), utc(2024, 3, 11, 0))
        ]
        assert keys[0] == keys[1]
        assert len(keys[0]) == 2

    def test_booked_within_the_hour_reminds_now(self):
        from willcall.models.enums import NotificationType
        from willcall.notifications.reminders import compute_reminder_times

        now = local(2024, 3, 12, 16, 30)
        times = compute_reminder_times(local(2024, 3, 12, 17), now=now)
        assert times == [(NotificationType.REMINDER_1_HOUR, now)]

    def test_booked_within_the_hour_in_quiet_hours_gets_nothing(self):
        from willcall.notifications.reminders import compute_reminder_times

        assert compute_reminder_times(local(2024, 3, 12, 7, 30), now=local(2024, 3, 12, 6, 45)) == []

    def test_no_reminder_once_the_appointment_has_started(self):
        from willcall.notifications.reminders import compute_reminder_times

        assert compute_reminder_times(local(2024, 3, 12, 17), now=local(2024, 3, 12, 17, 5)) == []
