from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime  # exclusive

    @property
    def label(self) -> str:
        return self.start.strftime("%B %Y")


def local_now() -> datetime:
    """Wall-clock time in the configured timezone, stored naive like every column."""
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _first_of_month(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + months
    return total // 12, total % 12 + 1


def month_to_date(now: datetime) -> Period:
    start = _first_of_month(now.year, now.month)
    return Period("month_to_date", start, now + timedelta(microseconds=1))


def previous_month(now: Optional[datetime] = None) -> Period:
    now = now or local_now()
    year, month = _shift_month(now.year, now.month, -1)
    return Period(
        "previous_month",
        _first_of_month(year, month),
        _first_of_month(now.year, now.month),
    )


def is_new_month(last: Optional[datetime], now: datetime) -> bool:
    if last is None:
        return True
    return (last.year, last.month) != (now.year, now.month)
