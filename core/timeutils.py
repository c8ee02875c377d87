import calendar
import math
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every billing column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def days_until(moment: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days left before ``moment``, rounded up (a partial day counts as one)."""
    if moment is None:
        return None
    return math.ceil((moment - now).total_seconds() / 86400)


def from_timestamp(value) -> Optional[datetime]:
    """Unix seconds (as sent by Stripe) to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)
