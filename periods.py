from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidInput
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    def overlaps(self, start: date, end: date) -> bool:
        return start <= self.end and end >= self.start


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1) - date.resolution
    return date(d.year, d.month + 1, 1) - date.resolution


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def default_budget_end(period: BudgetPeriod, start: date) -> date:
    if period == BudgetPeriod.monthly:
        return month_end(start)
    try:
        next_year = start.replace(year=start.year + 1)
    except ValueError:
        # Feb 29 start
        next_year = date(start.year + 1, 3, 1)
    return next_year - date.resolution


def _parse_date(field: str, value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInput(field, f"Invalid date: {value}") from exc


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        last_month_end = month_start(today) - date.resolution
        return Period("last_month", month_start(last_month_end), last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom" or (not period and (start or end)):
        if not start or not end:
            raise InvalidInput("period", "Custom period requires start and end dates")
        start_date = _parse_date("start", start)
        end_date = _parse_date("end", end)
        if start_date > end_date:
            raise InvalidInput("start", "Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "this_month":
        raise InvalidInput("period", f"Unknown period: {period}")

    return Period("this_month", month_start(today), month_end(today))
