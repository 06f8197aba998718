from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(year: int, month: int) -> tuple[date, date]:
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return first, next_month - date.resolution


def previous_month(today: date) -> tuple[int, int]:
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


def is_new_month(last: datetime, now: datetime) -> bool:
    return last.month != now.month or last.year != now.year


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), date(9999, 12, 31))
    if period == "last_month":
        year, month = previous_month(today)
        first, last = month_bounds(year, month)
        return Period("last_month", first, last)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period != "this_month":
        raise ValueError(f"Unknown period: {period}")

    first, last = month_bounds(today.year, today.month)
    return Period("this_month", first, last)
