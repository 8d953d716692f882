from datetime import date

import pytest

from errors import ValidationError
from models import BudgetPeriod
from periods import add_months, period_bounds, resolve_window, week_start


def test_monthly_bounds_cover_whole_month() -> None:
    assert period_bounds(BudgetPeriod.monthly, date(2026, 2, 10)) == (
        date(2026, 2, 1),
        date(2026, 2, 28),
    )
    assert period_bounds("MONTHLY", date(2024, 2, 29)) == (
        date(2024, 2, 1),
        date(2024, 2, 29),
    )


def test_quarterly_bounds_use_three_month_block() -> None:
    assert period_bounds(BudgetPeriod.quarterly, date(2026, 5, 15)) == (
        date(2026, 4, 1),
        date(2026, 6, 30),
    )
    assert period_bounds("quarterly", date(2026, 12, 31)) == (
        date(2026, 10, 1),
        date(2026, 12, 31),
    )


def test_yearly_bounds() -> None:
    assert period_bounds(BudgetPeriod.yearly, date(2026, 7, 4)) == (
        date(2026, 1, 1),
        date(2026, 12, 31),
    )


def test_unknown_period_is_rejected() -> None:
    with pytest.raises(ValidationError, match="Unsupported budget period"):
        period_bounds("WEEKLY", date(2026, 1, 1))


def test_add_months_crosses_year_boundary() -> None:
    assert add_months(date(2026, 1, 1), -5) == date(2025, 8, 1)
    assert add_months(date(2026, 11, 1), 3) == date(2027, 2, 1)


def test_week_starts_on_sunday() -> None:
    # 2026-10-19 is a Monday
    assert week_start(date(2026, 10, 19)) == date(2026, 10, 18)
    assert week_start(date(2026, 10, 18)) == date(2026, 10, 18)
    assert week_start(date(2026, 10, 24)) == date(2026, 10, 18)


def test_resolve_window_named_periods() -> None:
    today = date(2026, 10, 19)
    assert resolve_window("week", None, None, today=today).start == date(2026, 10, 12)
    assert resolve_window("month", None, None, today=today).start == date(2026, 5, 1)
    assert resolve_window("quarter", None, None, today=today).start == date(2026, 10, 1)
    year = resolve_window("year", None, None, today=today)
    assert (year.start, year.end) == (date(2026, 1, 1), today)


def test_resolve_window_explicit_dates_win() -> None:
    window = resolve_window("week", date(2026, 1, 1), date(2026, 1, 31), today=date(2026, 10, 19))
    assert window.slug == "custom"
    assert (window.start, window.end) == (date(2026, 1, 1), date(2026, 1, 31))

    with pytest.raises(ValidationError, match="Start date must be before end date"):
        resolve_window(None, date(2026, 2, 1), date(2026, 1, 1))
