from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month - date.resolution)


def resolve_month(value: Optional[str], *, today: Optional[date] = None) -> Period:
    """Parse ``YYYY-MM``; an empty value means the current month."""
    today = today or date.today()
    if not value:
        return month_period(today.year, today.month)
    try:
        year_str, month_str = value.split("-", 1)
        return month_period(int(year_str), int(month_str))
    except ValueError as exc:
        raise ValueError(f"Invalid month {value!r}, expected YYYY-MM") from exc
