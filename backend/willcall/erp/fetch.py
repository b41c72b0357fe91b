"""
ERP row source: paged OData fetch of sales-order headers.
"""

import logging
import re
import time
from typing import Any, Optional

import httpx

from willcall.config import get_settings
from willcall.erp.session import ErpSession
from willcall.utils.business_time import business_day_window_start_literal, utcnow

logger = logging.getLogger(__name__)

ORDER_HEADER_FIELDS = (
    "OrderNbr",
    "Status",
    "LocationID",
    "RequestedOn",
    "ShipVia",
    "JobName",
    "CustomerName",
    "NoteID",
    "LastModified",
)
ORDER_HEADER_CUSTOM = "Document.AttributeBUYERGROUP"

_LITERAL_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})([+-]\d{1,2}(?::?\d{2})?)$")
_OFFSET_RE = re.compile(r"^([+-])(\d{1,2})(?::?(\d{2}))?$")


def normalize_datetimeoffset_literal(value: str) -> str:
    """Coerce ``2024-03-10T03:00:00-7`` style input to ``datetimeoffset'...-07:00'``."""
    inner = str(value or "").strip()
    if inner.startswith("datetimeoffset'"):
        inner = inner[len("datetimeoffset'"):]
    inner = inner.rstrip("'")

    match = _LITERAL_RE.match(inner)
    if not match:
        return f"datetimeoffset'{inner}'"

    base, offset = match.group(1), match.group(2)
    offset_match = _OFFSET_RE.match(offset)
    if offset_match:
        sign, hh, mm = offset_match.groups()
        offset = f"{sign}{hh.zfill(2)}:{(mm or '00').zfill(2)}"
    return f"datetimeoffset'{base}{offset}'"


def _rows_from_body(body: Any) -> list[dict]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("value"), list):
        return body["value"]
    return []


async def fetch_order_summaries_since(
    session: ErpSession,
    baid: str,
    since_literal: Optional[str] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    page_size: Optional[int] = None,
    max_pages: Optional[int] = None,
    use_order_by: bool = True,
) -> list[dict]:
    """Fetch every sales-order header for ``baid`` modified since the watermark.

    Raises ``httpx.HTTPStatusError`` on a non-2xx page.
    """
    settings = get_settings()
    page_size = page_size or settings.ACU_PAGE_SIZE
    max_pages = max_pages or settings.ACU_MAX_PAGES
    since = normalize_datetimeoffset_literal(
        since_literal or business_day_window_start_literal(utcnow())
    )
    escaped_baid = baid.replace("'", "''")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=5.0))
    rows: list[dict] = []
    try:
        for page in range(max_pages):
            token = await session.get_token(client)
            params = {
                "$filter": f"CustomerID eq '{escaped_baid}' and LastModified ge {since}",
                "$select": ",".join(ORDER_HEADER_FIELDS),
                "$custom": ORDER_HEADER_CUSTOM,
                "$top": str(page_size),
                "$skip": str(page * page_size),
            }
            if use_order_by:
                params["$orderby"] = "LastModified desc"

            started = time.monotonic()
            response = await client.get(
                session.entity_url("SalesOrder"),
                params=params,
                headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            page_rows = _rows_from_body(response.json() if response.content else [])
            rows.extend(page_rows)

            logger.info(
                "fetch_order_summaries_since: baid=%s page=%d rows=%d ms=%d",
                baid, page, len(page_rows), int((time.monotonic() - started) * 1000),
            )
            if len(page_rows) < page_size:
                break
    finally:
        if owns_client:
            await client.aclose()

    logger.info("fetch_order_summaries_since: baid=%s total_rows=%d", baid, len(rows))
    return rows
