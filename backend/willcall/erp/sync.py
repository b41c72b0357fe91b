"""
Customer-account delta sync: ERP rows -> order delta filter -> order summaries.

Writes are upserts keyed by (baid, order_nbr), so overlapping or repeated
syncs for the same account are safe without locking.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from willcall.erp.fetch import fetch_order_summaries_since
from willcall.erp.filter_orders import OrderRecord, filter_orders
from willcall.erp.session import ErpSession
from willcall.models.order_summary import ErpOrderSummary
from willcall.utils.business_time import business_day_window_start_literal, utcnow

logger = logging.getLogger(__name__)

# (account, filters) -> raw ERP rows; may raise
RowSource = Callable[[str, dict], Awaitable[list[dict]]]

INACTIVE_STATUSES = frozenset({
    "Canceled",
    "Cancelled",
    "On Hold",
    "Pending Approval",
    "Rejected",
    "Pending Processing",
    "Awaiting Payment",
    "Credit Hold",
    "Completed",
    "Invoiced",
    "Expired",
    "Purchase Hold",
    "Not Approved",
    "Risk Hold",
})

_SYNCED_COLUMNS = (
    "status",
    "location_id",
    "requested_on",
    "ship_via",
    "job_name",
    "customer_name",
    "buyer_group",
    "note_id",
)


def session_row_source(session: ErpSession) -> RowSource:
    """Row source backed by the Acumatica REST endpoint."""
    async def fetch(account: str, filters: dict) -> list[dict]:
        return await fetch_order_summaries_since(session, account, filters.get("since_literal"))
    return fetch


async def upsert_order_summaries_delta(
    db: AsyncSession,
    baid: str,
    records: list[OrderRecord],
    now: Optional[datetime] = None,
) -> dict:
    """Insert new orders and update changed ones for one account.

    Unchanged rows are left untouched. Returns ``{"inserted": n, "updated": n}``.
    """
    if not records:
        return {"inserted": 0, "updated": 0}

    now = now or utcnow()
    order_nbrs = [r.order_nbr for r in records]
    existing_result = await db.execute(
        select(ErpOrderSummary.order_nbr).where(
            ErpOrderSummary.baid == baid,
            ErpOrderSummary.order_nbr.in_(order_nbrs),
        )
    )
    existing = set(existing_result.scalars().all())

    stmt = pg_insert(ErpOrderSummary).values([
        {
            "baid": baid,
            "order_nbr": r.order_nbr,
            "status": r.status,
            "location_id": r.location_id,
            "requested_on": r.requested_on_at,
            "ship_via": r.ship_via,
            "job_name": r.job_name,
            "customer_name": r.customer_name,
            "buyer_group": r.buyer_group,
            "note_id": r.note_id,
            "is_active": True,
            "last_seen_at": now,
        }
        for r in records
    ])
    changed = or_(*[
        getattr(ErpOrderSummary, col).is_distinct_from(stmt.excluded[col])
        for col in _SYNCED_COLUMNS
    ], ErpOrderSummary.is_active.is_(False))
    stmt = stmt.on_conflict_do_update(
        constraint="uq_erp_order_summaries_baid_nbr",
        set_={
            **{col: stmt.excluded[col] for col in _SYNCED_COLUMNS},
            "is_active": True,
            "last_seen_at": now,
            "updated_at": now,
        },
        where=changed,
    )
    result = await db.execute(stmt)
    await db.commit()

    inserted = sum(1 for nbr in set(order_nbrs) if nbr not in existing)
    written = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else inserted
    updated = max(written - inserted, 0)

    logger.info(
        "upsert_order_summaries_delta: baid=%s inserted=%d updated=%d", baid, inserted, updated,
    )
    return {"inserted": inserted, "updated": updated}


async def run_customer_delta_sync(
    db: AsyncSession,
    baid: str,
    fetch_rows: RowSource,
    *,
    since_literal: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Sync one customer account's order headers modified since the watermark."""
    now = now or utcnow()
    since = since_literal or business_day_window_start_literal(now)

    logger.info("run_customer_delta_sync: fetch headers baid=%s since=%s", baid, since)
    rows = await fetch_rows(baid, {"since_literal": since})
    filtered = filter_orders(rows, now=now)
    summary = await upsert_order_summaries_delta(db, baid, filtered.kept, now=now)

    active_order_nbrs = [r.order_nbr for r in filtered.kept if r.status not in INACTIVE_STATUSES]

    logger.info(
        "run_customer_delta_sync: baid=%s fetched=%d kept=%d active=%d",
        baid, filtered.counts.total_from_erp, filtered.counts.kept, len(active_order_nbrs),
    )
    return {
        "baid": baid,
        "since_literal": since,
        "fetched_headers": filtered.counts.total_from_erp,
        "kept_headers": filtered.counts.kept,
        "counts": asdict(filtered.counts),
        "summary": summary,
        "active_order_nbrs": active_order_nbrs,
    }


async def sync_customer_accounts(
    session_factory: async_sessionmaker,
    baids: Iterable[str],
    fetch_rows: RowSource,
    *,
    concurrency: int = 4,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Run the delta sync for several accounts.

    A failing account is reported as ``{"baid", "ok": False, "error"}`` and
    does not stop the others.
    """
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def run_one(baid: str) -> dict[str, Any]:
        async with semaphore:
            async with session_factory() as db:
                try:
                    result = await run_customer_delta_sync(db, baid, fetch_rows, now=now)
                    return {"baid": baid, "ok": True, "result": result}
                except Exception as e:
                    await db.rollback()
                    logger.warning("sync_customer_accounts: baid=%s failed: %s", baid, e)
                    return {"baid": baid, "ok": False, "error": str(e)}

    results = await asyncio.gather(*(run_one(b) for b in baids))
    ok = sum(1 for r in results if r["ok"])
    logger.info("sync_customer_accounts: ok=%d failed=%d", ok, len(results) - ok)
    return list(results)
