from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_end(day: date) -> date:
    if day.month == 12:
        next_month = date(day.year + 1, 1, 1)
    else:
        next_month = date(day.year, day.month + 1, 1)
    return next_month - date.resolution


def add_months(day: date, count: int) -> date:
    idx = day.year * 12 + (day.month - 1) + count
    return date(idx // 12, idx % 12 + 1, 1)


def quarter_start(day: date) -> date:
    quarter = (day.month - 1) // 3
    return date(day.year, quarter * 3 + 1, 1)


def week_start(day: date) -> date:
    """Sunday of the week containing ``day``."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def period_bounds(period: str, reference_date: date) -> tuple[date, date]:
    """Concrete ``[start, end]`` window of a budget period around ``reference_date``."""
    token = str(getattr(period, "value", period)).upper()
    if token == "MONTHLY":
        start = reference_date.replace(day=1)
        return start, month_end(start)
    if token == "QUARTERLY":
        start = quarter_start(reference_date)
        return start, month_end(add_months(start, 2))
    if token == "YEARLY":
        return date(reference_date.year, 1, 1), date(reference_date.year, 12, 31)
    raise ValidationError(f"Unsupported budget period: {period}")


def resolve_window(
    period: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    """Analytics date window from explicit dates or a named period token."""
    today = today or date.today()
    if start and end:
        if start > end:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start, end)

    slug = period or "month"
    if slug == "week":
        return Period(slug, today - timedelta(days=7), today)
    if slug == "quarter":
        return Period(slug, quarter_start(today), today)
    if slug == "year":
        return Period(slug, date(today.year, 1, 1), today)
    if slug == "month":
        # last six calendar months including the current one
        return Period(slug, add_months(today.replace(day=1), -5), today)
    raise ValidationError(f"Unsupported period: {period}")
