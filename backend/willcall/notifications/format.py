from datetime import datetime
from typing import Optional

from willcall.utils.business_time import to_business_local


def format_business_datetime(value: datetime) -> str:
    """``Mar 10, 2024 6:00 PM`` in business-local time."""
    local = to_business_local(value)
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local:%b} {local.day}, {local.year} {hour}:{local.minute:02d} {meridiem}"


def format_order_list(order_nbrs: Optional[list[str]] = None) -> str:
    if not order_nbrs:
        return "Orders: (none)"
    return f"Orders: {', '.join(order_nbrs)}"
