from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from config import get_settings
from models import Debt, Income
from periods import add_months, iter_months, month_end, month_start, months_between


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


@dataclass(frozen=True)
class Schedule:
    """Start date plus an optional inclusive end date; no end means open-ended."""

    start: date
    end: Optional[date] = None

    @property
    def open_ended(self) -> bool:
        return self.end is None


@dataclass(frozen=True)
class Activity:
    active: bool
    ordinal: Optional[int] = None


def derive_end_date(start: date, count: int) -> date:
    if count < 1:
        raise ValueError("Count must be at least 1")
    # the start month already accounts for the first payment
    return add_months(start, count - 1)


def debt_schedule(debt: Debt) -> Schedule:
    end = None
    if debt.has_end:
        end = debt.end_date or derive_end_date(
            debt.first_payment_date, debt.installments or 1
        )
    return Schedule(debt.first_payment_date, end)


def income_schedule(income: Income) -> Schedule:
    end = None
    if not income.is_recurrent:
        end = income.end_date or derive_end_date(
            income.first_income_date, income.number_of_payments or 1
        )
    return Schedule(income.first_income_date, end)


def resolve(schedule: Schedule, target: date) -> Activity:
    start = month_start(target)
    end = month_end(target)
    starts_within = start <= schedule.start <= end
    running = schedule.start <= start and (
        schedule.end is None or schedule.end >= start
    )
    if not (starts_within or running):
        return Activity(False)
    return Activity(True, months_between(schedule.start, start) + 1)


def _active_clause(
    start_col, end_col, open_ended: ColumnElement, start: date, end: date
) -> ColumnElement:
    return or_(
        and_(start_col >= start, start_col <= end),
        and_(start_col <= start, or_(open_ended, end_col >= start)),
    )


def debt_active_clause(target: date) -> ColumnElement:
    return _active_clause(
        Debt.first_payment_date,
        Debt.end_date,
        Debt.has_end.is_(False),
        month_start(target),
        month_end(target),
    )


def income_active_clause(target: date) -> ColumnElement:
    return _active_clause(
        Income.first_income_date,
        Income.end_date,
        Income.is_recurrent.is_(True),
        month_start(target),
        month_end(target),
    )


def sync_months(schedule: Schedule, today: Optional[date] = None) -> list[date]:
    """Months a change to this schedule has to be pushed into.

    Open-ended schedules are not expanded into the future; only the month
    they currently apply to is visited.
    """
    if schedule.end is not None:
        return list(iter_months(schedule.start, schedule.end))
    current = month_start(today or local_today())
    if schedule.start <= current:
        return [current]
    return [month_start(schedule.start)]
