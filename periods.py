from dataclasses import dataclass
from datetime import date
from typing import Iterator, Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def iter_months(
    start: tuple[int, int], stop: tuple[int, int]
) -> Iterator[tuple[int, int]]:
    """Yield (year, month) pairs from ``start`` up to but excluding ``stop``."""
    current = start
    while current < stop:
        yield current
        current = next_month(*current)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        year, month = previous_month(today.year, today.month)
        return Period("last_month", month_start(year, month), month_end(year, month))
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    return Period(
        "this_month",
        month_start(today.year, today.month),
        month_end(today.year, today.month),
    )
