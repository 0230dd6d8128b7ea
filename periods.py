from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

PERIOD_SLUGS = ("weekly", "monthly", "all")


@dataclass(frozen=True)
class Period:
    """A filter window; ``None`` bounds are open."""

    slug: str
    start: Optional[date]
    end: Optional[date] = None

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def resolve_period(period: Optional[str], *, today: Optional[date] = None) -> Period:
    today = today or local_today()
    if not period or period == "all":
        return Period("all", None)
    if period == "weekly":
        return Period("weekly", today - timedelta(days=6))
    if period == "monthly":
        return Period("monthly", shift_months(today, -1))
    raise ValueError(f"Unknown period: {period}")
