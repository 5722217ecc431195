"""Date manipulation utilities"""

from datetime import date, datetime, timezone
from typing import Any, Optional, TypeVar

from dateutil.relativedelta import relativedelta

RAIL_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

D = TypeVar("D", date, datetime)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: D, months: int) -> D:
    """Calendar month arithmetic, clamping to the last day of shorter months (Jan 31 + 1 -> Feb 28/29)"""
    return value + relativedelta(months=months)


def rail_timestamp(moment: datetime) -> str:
    """Format a timestamp the way Daraja expects it in passwords (yyyyMMddHHmmss)"""
    return moment.strftime(RAIL_TIMESTAMP_FORMAT)


def parse_rail_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Daraja yyyyMMddHHmmss value (sent as a number or string); None if unparseable"""
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), RAIL_TIMESTAMP_FORMAT)
    except ValueError:
        return None
