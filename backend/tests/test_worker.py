"""
Tests for the worker tick, the worker loop and the /health endpoint.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import local, make_senders

IDLE_TICK = {
    "sweep": {"ran": False},
    "jobs": {"processed": 0, "sent": 0, "skipped": 0, "cancelled": 0, "failed": 0},
}


def _factory(db, binds=None):
    @asynccontextmanager
    async def session_factory(**kw):
        if binds is not None:
            binds.append(kw.get("bind"))
        yield db
    return session_factory


def _lock_result(acquired):
    result = MagicMock()
    result.scalar_one.return_value = acquired
    return result


def _connection(*results):
    conn = MagicMock()
    conn.execute = AsyncMock(side_effect=list(results))
    conn.commit = AsyncMock()
    return conn


def _engine(conn):
    @asynccontextmanager
    async def connect():
        yield conn

    engine = MagicMock()
    engine.connect = MagicMock(side_effect=connect)
    engine.dispose = AsyncMock()
    return engine


class TestWorkerTick:
    async def test_sweep_runs_before_pending_jobs(self, mock_db):
        from willcall.worker import run_worker_tick

        order = []
        sweep = AsyncMock(side_effect=lambda *a, **kw: order.append("sweep") or {"ran": False})
        jobs = AsyncMock(side_effect=lambda *a, **kw: order.append("jobs") or {"processed": 0})

        with patch("willcall.worker.run_no_show_sweep", sweep), \
             patch("willcall.worker.run_pending_jobs", jobs):
            result = await run_worker_tick(mock_db, make_senders(), now=local(2024, 3, 12, 17, 20))

        assert order == ["sweep", "jobs"]
        assert result == {"sweep": {"ran": False}, "jobs": {"processed": 0}}

    async def test_tick_skipped_without_advisory_lock(self, mock_db):
        from willcall.worker import _locked_tick

        conn = _connection(_lock_result(False))

        with patch("willcall.worker.run_worker_tick", new_callable=AsyncMock) as tick:
            assert await _locked_tick(_engine(conn), _factory(mock_db), make_senders()) is None

        tick.assert_not_awaited()
        assert conn.execute.await_count == 1

    async def test_tick_session_uses_the_lock_connection(self, mock_db):
        from willcall.worker import _locked_tick

        conn = _connection(_lock_result(True), _lock_result(True))
        binds = []

        with patch("willcall.worker.run_worker_tick", AsyncMock(return_value=IDLE_TICK)) as tick:
            result = await _locked_tick(_engine(conn), _factory(mock_db, binds), make_senders())

        assert result == IDLE_TICK
        assert binds == [conn]
        assert tick.await_args.args[0] is mock_db
        statements = [str(call.args[0]) for call in conn.execute.await_args_list]
        assert statements == [
            "SELECT pg_try_advisory_lock(804511207)",
            "SELECT pg_advisory_unlock(804511207)",
        ]
        assert conn.commit.await_count == 2
        mock_db.execute.assert_not_awaited()

    async def test_lock_released_when_tick_raises(self, mock_db):
        from willcall.worker import _locked_tick

        conn = _connection(_lock_result(True), _lock_result(True))

        with patch("willcall.worker.run_worker_tick", AsyncMock(side_effect=RuntimeError("db gone"))):
            with pytest.raises(RuntimeError):
                await _locked_tick(_engine(conn), _factory(mock_db), make_senders())

        assert str(conn.execute.await_args.args[0]) == "SELECT pg_advisory_unlock(804511207)"

    async def test_unlock_that_releases_nothing_is_logged(self, mock_db, caplog):
        from willcall.worker import _locked_tick

        conn = _connection(_lock_result(True), _lock_result(False))

        with patch("willcall.worker.run_worker_tick", AsyncMock(return_value=IDLE_TICK)), \
             caplog.at_level(logging.WARNING, logger="willcall.worker"):
            assert await _locked_tick(_engine(conn), _factory(mock_db), make_senders()) == IDLE_TICK

        assert "was not held at unlock" in caplog.text


class TestWorkerLoop:
    async def test_pool_disposed_after_consecutive_errors(self):
        from willcall.worker import worker_loop

        engine = MagicMock()
        engine.connect = MagicMock(side_effect=RuntimeError("connection refused"))
        engine.dispose = AsyncMock()
        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("willcall.worker.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await worker_loop(senders=make_senders(), session_factory=MagicMock(), engine=engine)

        assert engine.connect.call_count == 3
        engine.dispose.assert_awaited_once()

    async def test_successful_tick_stamps_health(self, mock_db):
        from willcall.worker import worker_loop

        health = {}
        engine = _engine(_connection(_lock_result(True), _lock_result(True)))

        with patch("willcall.worker.run_worker_tick", AsyncMock(return_value=IDLE_TICK)), \
             patch("willcall.worker.asyncio.sleep", AsyncMock(side_effect=asyncio.CancelledError())):
            with pytest.raises(asyncio.CancelledError):
                await worker_loop(
                    health=health, senders=make_senders(),
                    session_factory=_factory(mock_db), engine=engine,
                )

        assert health["worker_last_ok"] <= time.time()
        engine.dispose.assert_not_awaited()


class TestHealthEndpoint:
    async def _get_health(self, session_factory):
        from willcall.main import app

        with patch("willcall.database.AsyncSessionLocal", session_factory):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                return await client.get("/health")

    async def test_database_down_is_503(self):
        response = await self._get_health(MagicMock(side_effect=RuntimeError("db down")))

        assert response.status_code == 503
        assert response.json() == {"status": "degraded", "database": "unavailable"}

    async def test_reports_worker_freshness(self, mock_db):
        import willcall.main as main

        with patch.dict(main._background_health, {"worker_last_ok": time.time()}, clear=True):
            response = await self._get_health(_factory(mock_db))

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "background_tasks": {"notification_worker": "ok"},
        }

    async def test_stale_worker(self, mock_db):
        import willcall.main as main

        with patch.dict(main._background_health, {"worker_last_ok": time.time() - 3600}, clear=True):
            response = await self._get_health(_factory(mock_db))

        assert response.json()["background_tasks"]["notification_worker"].startswith("stale")
