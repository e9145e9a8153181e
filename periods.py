from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from errors import ValidationError


@dataclass(frozen=True)
class MonthPeriod:
    start: date
    end: date

    @property
    def slug(self) -> str:
        return self.start.strftime("%Y-%m")


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def month_period(d: date) -> MonthPeriod:
    return MonthPeriod(month_start(d), month_end(d))


def add_months(d: date, months: int) -> date:
    total_months = d.month - 1 + months
    year = d.year + total_months // 12
    month = total_months % 12 + 1
    day = min(d.day, month_end(date(year, month, 1)).day)
    return date(year, month, day)


def months_between(start: date, end: date) -> int:
    """Whole calendar months from ``start`` to ``end`` (days ignored)."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def iter_months(start: date, end: date) -> Iterator[date]:
    current = month_start(start)
    last = month_start(end)
    while current <= last:
        yield current
        current = add_months(current, 1)


def parse_month(value: str, *, today: Optional[date] = None) -> date:
    """Accept ``YYYY-MM``, ``YYYY-MM-DD`` or ``current``."""
    value = (value or "").strip()
    if value in ("", "current"):
        return month_start(today or date.today())
    try:
        if len(value) == 7:
            return date.fromisoformat(f"{value}-01")
        return month_start(date.fromisoformat(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid month: {value}") from exc
