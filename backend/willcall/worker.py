"""
Notification worker: the no-show sweep followed by the pending-jobs runner,
repeated every ``NOTIFICATIONS_WORKER_INTERVAL_MS``.

Run standalone with ``python -m willcall.worker``, or as a background task of
the API process (see ``willcall.main``).
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from willcall.config import get_settings
from willcall.notifications.dispatch import ChannelSenders
from willcall.notifications.no_show import run_no_show_sweep
from willcall.notifications.runner import run_pending_jobs
from willcall.utils.business_time import utcnow

logger = logging.getLogger(__name__)

# pg advisory lock id; only the holder runs a tick when several workers share a DB
ADVISORY_LOCK_ID = 804511207

MAX_CONSECUTIVE_ERRORS = 3


async def run_worker_tick(
    db: AsyncSession,
    senders: ChannelSenders,
    now: Optional[datetime] = None,
) -> dict:
    """One composed tick: sweep first, then due jobs."""
    now = now or utcnow()
    sweep = await run_no_show_sweep(db, senders, now=now)
    jobs = await run_pending_jobs(db, senders, now=now)
    return {"sweep": sweep, "jobs": jobs}


async def _locked_tick(engine, session_factory, senders: ChannelSenders) -> Optional[dict]:
    """Run one tick under the advisory lock, or return None if another worker has it.

    The lock belongs to a database connection, so the tick's session is
    bound to the one connection that takes and releases it.
    """
    async with engine.connect() as conn:
        lock_result = await conn.execute(text(f"SELECT pg_try_advisory_lock({ADVISORY_LOCK_ID})"))
        acquired = lock_result.scalar_one()
        await conn.commit()
        if not acquired:
            logger.debug("worker: another worker holds the tick lock, skipping")
            return None
        try:
            async with session_factory(bind=conn) as db:
                return await run_worker_tick(db, senders)
        finally:
            unlock_result = await conn.execute(text(f"SELECT pg_advisory_unlock({ADVISORY_LOCK_ID})"))
            released = unlock_result.scalar_one()
            await conn.commit()
            if not released:
                logger.warning("worker: advisory lock %d was not held at unlock", ADVISORY_LOCK_ID)


async def worker_loop(
    health: Optional[dict] = None,
    senders: Optional[ChannelSenders] = None,
    session_factory=None,
    engine=None,
) -> None:
    """Run ticks forever. A failing tick is logged and retried next interval."""
    if session_factory is None or engine is None:
        from willcall.database import AsyncSessionLocal, engine as default_engine
        session_factory = session_factory or AsyncSessionLocal
        engine = engine or default_engine

    settings = get_settings()
    senders = senders or ChannelSenders.from_settings()
    interval = settings.worker_interval_seconds
    consecutive_errors = 0

    logger.info("worker_loop: started (interval=%.0fs cap=%d)", interval, settings.NOTIFICATIONS_CAP)
    while True:
        try:
            result = await _locked_tick(engine, session_factory, senders)
            if result is not None:
                jobs = result["jobs"]
                if jobs["processed"] or result["sweep"]["ran"]:
                    logger.info(
                        "worker_loop: tick sweep_ran=%s processed=%d sent=%d failed=%d",
                        result["sweep"]["ran"], jobs["processed"], jobs["sent"], jobs["failed"],
                    )
            consecutive_errors = 0
            if health is not None:
                health["worker_last_ok"] = time.time()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            consecutive_errors += 1
            logger.warning("worker_loop: error in tick (%d consecutive): %s", consecutive_errors, e)
            # Fresh connections next time if the database keeps failing
            if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                try:
                    await engine.dispose()
                    logger.info(
                        "worker_loop: disposed connection pool after %d consecutive errors",
                        consecutive_errors,
                    )
                except Exception as dispose_error:
                    logger.warning("worker_loop: pool dispose failed: %s", dispose_error)

        await asyncio.sleep(interval)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("worker_loop: stopped")


if __name__ == "__main__":
    main()
