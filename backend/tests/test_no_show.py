"""
Tests for the daily no-show sweep.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from conftest import local, make_appointment, make_senders


class _DailyClaims:
    """In-memory stand-in for the job_states once-per-day upsert."""

    def __init__(self):
        self.claimed_dates = set()

    async def claim(self, db, now, name="appointment-no-show-sweep"):
        from willcall.utils.business_time import business_date_key

        day = business_date_key(now)
        if day in self.claimed_dates:
            return False
        self.claimed_dates.add(day)
        return True


class TestRunWindow:
    @pytest.mark.parametrize("hour,minute,expected", [
        (17, 14, False),
        (17, 15, True),
        (17, 44, True),
        (17, 45, False),
        (5, 15, False),
    ])
    def test_window_boundaries(self, hour, minute, expected):
        from willcall.notifications.no_show import in_run_window

        assert in_run_window(local(2024, 3, 12, hour, minute)) is expected

    async def test_outside_window_does_nothing(self, mock_db):
        from willcall.notifications.no_show import run_no_show_sweep

        summary = await run_no_show_sweep(mock_db, make_senders(), now=local(2024, 3, 12, 12))

        assert summary["ran"] is False
        mock_db.execute.assert_not_awaited()


class TestDailyClaim:
    async def test_claim_is_a_conditional_upsert(self, mock_db):
        from willcall.notifications.no_show import claim_daily_run

        result = MagicMock()
        result.scalar_one_or_none.return_value = "appointment-no-show-sweep"
        mock_db.execute = AsyncMock(return_value=result)

        assert await claim_daily_run(mock_db, local(2024, 3, 12, 17, 20)) is True

        compiled = mock_db.execute.await_args.args[0].compile(dialect=postgresql.dialect())
        sql = str(compiled)
        assert "ON CONFLICT (name) DO UPDATE" in sql
        assert "IS DISTINCT FROM excluded.last_run_date" in sql
        assert "RETURNING job_states.name" in sql
        assert "2024-03-12" in compiled.params.values()
        mock_db.commit.assert_awaited_once()

    async def test_already_claimed_today(self, mock_db):
        from willcall.notifications.no_show import claim_daily_run

        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        mock_db.execute = AsyncMock(return_value=result)

        assert await claim_daily_run(mock_db, local(2024, 3, 12, 17, 20)) is False


class TestSweep:
    async def test_runs_once_per_day(self, mock_db):
        """Two ticks inside the window on the same day notify the customer once."""
        from willcall.notifications.no_show import run_no_show_sweep

        appointment = make_appointment(
            start_at=local(2024, 3, 12, 10), status="Scheduled", email_opt_in=True,
        )
        senders = make_senders()
        claims = _DailyClaims()

        with patch("willcall.notifications.no_show.claim_daily_run", claims.claim), \
             patch("willcall.notifications.no_show.load_no_show_candidates",
                   AsyncMock(return_value=[appointment])), \
             patch("willcall.notifications.no_show.cancel_pending_jobs", new_callable=AsyncMock) as cancel:
            first = await run_no_show_sweep(mock_db, senders, now=local(2024, 3, 12, 17, 16))
            second = await run_no_show_sweep(mock_db, senders, now=local(2024, 3, 12, 17, 17))

        assert first == {"ran": True, "candidates": 1, "marked_no_show": 1, "emails": 1, "sms": 1, "failed": 0}
        assert second["ran"] is False
        assert appointment.status == "NoShow"
        cancel.assert_awaited_once_with(mock_db, appointment.id)
        senders.sms.send.assert_awaited_once()
        senders.email.send.assert_awaited_once()

        sms_body = senders.sms.send.await_args.args[1]
        assert sms_body.startswith("We missed you at your pickup on Mar 12, 2024 10:00 AM.")
        assert "Orders: SO-1001, SO-1002" in sms_body
        to, subject, html = senders.email.send.await_args.args
        assert subject == "We missed you at pickup"
        assert 'href="https://willcall.example.com/"' in html

    async def test_next_day_runs_again(self, mock_db):
        from willcall.notifications.no_show import run_no_show_sweep

        claims = _DailyClaims()
        with patch("willcall.notifications.no_show.claim_daily_run", claims.claim), \
             patch("willcall.notifications.no_show.load_no_show_candidates", AsyncMock(return_value=[])):
            first = await run_no_show_sweep(mock_db, make_senders(), now=local(2024, 3, 12, 17, 16))
            second = await run_no_show_sweep(mock_db, make_senders(), now=local(2024, 3, 13, 17, 16))

        assert first["ran"] is True
        assert second["ran"] is True

    async def test_already_no_show_is_notified_but_not_recounted(self, mock_db):
        from willcall.notifications.no_show import run_no_show_sweep

        appointment = make_appointment(start_at=local(2024, 3, 12, 10), status="NoShow")
        senders = make_senders()

        with patch("willcall.notifications.no_show.claim_daily_run", AsyncMock(return_value=True)), \
             patch("willcall.notifications.no_show.load_no_show_candidates",
                   AsyncMock(return_value=[appointment])), \
             patch("willcall.notifications.no_show.cancel_pending_jobs", new_callable=AsyncMock):
            summary = await run_no_show_sweep(mock_db, senders, now=local(2024, 3, 12, 17, 20))

        assert summary["marked_no_show"] == 0
        assert summary["sms"] == 1
        assert summary["emails"] == 0

    async def test_opted_out_sms_is_not_sent(self, mock_db):
        from willcall.notifications.no_show import send_no_show_notifications

        appointment = make_appointment(sms_opt_out_at=local(2024, 3, 1))
        senders = make_senders()

        sent = await send_no_show_notifications(appointment, senders)

        assert sent == {"email": False, "sms": False}
        senders.sms.send.assert_not_awaited()

    async def test_send_failure_continues_with_next_appointment(self, mock_db):
        from willcall.notifications.no_show import run_no_show_sweep

        failing = make_appointment(start_at=local(2024, 3, 12, 9))
        ok = make_appointment(start_at=local(2024, 3, 12, 10))
        senders = make_senders()
        senders.sms.send = AsyncMock(side_effect=[RuntimeError("twilio down"), {"ok": True, "skipped": False}])

        with patch("willcall.notifications.no_show.claim_daily_run", AsyncMock(return_value=True)), \
             patch("willcall.notifications.no_show.load_no_show_candidates",
                   AsyncMock(return_value=[failing, ok])), \
             patch("willcall.notifications.no_show.cancel_pending_jobs", new_callable=AsyncMock):
            summary = await run_no_show_sweep(mock_db, senders, now=local(2024, 3, 12, 17, 20))

        assert summary["failed"] == 1
        assert summary["sms"] == 1
        assert summary["marked_no_show"] == 2
        assert failing.status == "NoShow"
        assert ok.status == "NoShow"

    async def test_candidate_query(self, mock_db):
        from willcall.notifications.no_show import load_no_show_candidates
        from willcall.utils.business_time import start_of_business_day

        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        mock_db.execute = AsyncMock(return_value=result)
        now = local(2024, 3, 12, 17, 20)

        await load_no_show_candidates(mock_db, now)

        compiled = mock_db.execute.await_args.args[0].compile(dialect=postgresql.dialect())
        values = compiled.params.values()
        assert start_of_business_day(now) in values
        assert now in values
        assert "Completed" not in str(compiled.params)
        assert "Cancelled" not in str(compiled.params)
