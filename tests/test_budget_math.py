from datetime import date, datetime
from decimal import Decimal

from budgets import (
    STATUS_CAUTION,
    STATUS_CRITICAL,
    STATUS_EXCEEDED,
    STATUS_GOOD,
    budget_stats,
    budget_status,
    compute_summary,
    generate_alerts,
    pct_change,
)

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)
MID_JANUARY = datetime(2026, 1, 16)


def test_half_way_through_month_projects_linear_pace() -> None:
    summary = compute_summary(500, JAN_START, JAN_END, [100, 120, 80], MID_JANUARY)

    assert summary.spent == Decimal("300")
    assert summary.remaining == Decimal("200")
    assert summary.percentage == Decimal("60")
    assert summary.status == STATUS_GOOD
    assert summary.transactions == 3
    assert summary.average_transaction == Decimal("100")

    projection = summary.projection
    assert projection.total_days == 30
    assert projection.days_elapsed == 15
    assert projection.days_remaining == 15
    assert projection.daily_average == Decimal("20")
    assert projection.estimated_total == Decimal("600")
    assert projection.on_track is False

    alerts = generate_alerts([summary])
    assert len(alerts) == 1
    assert alerts[0].kind == "projection"
    assert alerts[0].severity == "warning"
    assert "100.00" in alerts[0].message


def test_overspent_budget_raises_only_exceeded_alert() -> None:
    summary = compute_summary(500, JAN_START, JAN_END, [300, 220], MID_JANUARY)

    assert summary.percentage == Decimal("104")
    assert summary.status == STATUS_EXCEEDED
    assert summary.to_dict()["percentage"] == 104.0

    alerts = generate_alerts([summary])
    assert [a.kind for a in alerts] == ["exceeded"]
    assert alerts[0].severity == "error"
    assert alerts[0].message == "Budget exceeded by 20.00"


def test_critical_budget_raises_approaching_alert() -> None:
    summary = compute_summary(100, JAN_START, JAN_END, [92], datetime(2026, 1, 30))

    assert summary.status == STATUS_CRITICAL
    alerts = generate_alerts([summary])
    assert [a.kind for a in alerts] == ["approaching"]
    assert "92.0% used" in alerts[0].message


def test_on_track_budget_has_no_alert() -> None:
    summary = compute_summary(500, JAN_START, JAN_END, [50], MID_JANUARY)
    assert summary.projection.on_track is True
    assert generate_alerts([summary]) == []


def test_status_thresholds() -> None:
    assert budget_status(Decimal("74.99")) == STATUS_GOOD
    assert budget_status(Decimal("75")) == STATUS_CAUTION
    assert budget_status(Decimal("89.99")) == STATUS_CAUTION
    assert budget_status(Decimal("90")) == STATUS_CRITICAL
    assert budget_status(Decimal("100")) == STATUS_EXCEEDED


def test_zero_amount_budget_reports_zero_percent() -> None:
    summary = compute_summary(0, JAN_START, JAN_END, [25], MID_JANUARY)
    assert summary.percentage == 0
    assert summary.status == STATUS_GOOD
    assert summary.remaining == Decimal("-25")


def test_no_expenses() -> None:
    summary = compute_summary(200, JAN_START, JAN_END, [], MID_JANUARY)
    assert summary.spent == 0
    assert summary.average_transaction == 0
    assert summary.projection.daily_average == 0
    assert summary.projection.on_track is True


def test_future_budget_has_no_projection() -> None:
    summary = compute_summary(200, JAN_START, JAN_END, [], datetime(2025, 12, 20))
    assert summary.projection.daily_average == 0
    assert summary.projection.estimated_total == 0
    assert summary.projection.on_track is True


def test_finished_budget_keeps_sampling_to_now() -> None:
    summary = compute_summary(500, JAN_START, JAN_END, [400], datetime(2026, 2, 10))
    assert summary.projection.days_elapsed == 40
    assert summary.projection.days_remaining == 0
    assert summary.projection.daily_average == Decimal("10")
    assert summary.projection.estimated_total == Decimal("300")


def test_remaining_plus_spent_is_exact() -> None:
    amounts = [Decimal("33.33"), Decimal("33.33"), Decimal("33.33")]
    summary = compute_summary(Decimal("100.00"), JAN_START, JAN_END, amounts, MID_JANUARY)
    assert summary.remaining == Decimal("0.01")
    assert summary.remaining + summary.spent == summary.amount


def test_percentage_rounds_only_in_payload() -> None:
    summary = compute_summary(300, JAN_START, JAN_END, [100], MID_JANUARY)
    assert summary.percentage != Decimal("33.3")
    assert summary.to_dict()["percentage"] == 33.3


def test_alerts_keep_input_order() -> None:
    exceeded = compute_summary(100, JAN_START, JAN_END, [150], MID_JANUARY, budget_id=1)
    fine = compute_summary(100, JAN_START, JAN_END, [1], MID_JANUARY, budget_id=2)
    critical = compute_summary(100, JAN_START, JAN_END, [95], MID_JANUARY, budget_id=3)

    alerts = generate_alerts([critical, fine, exceeded])
    assert [a.budget_id for a in alerts] == [3, 1]


def test_budget_stats_totals() -> None:
    summaries = [
        compute_summary(500, JAN_START, JAN_END, [520], MID_JANUARY),
        compute_summary(500, JAN_START, JAN_END, [50], MID_JANUARY),
    ]
    stats = budget_stats(summaries)
    assert stats == {
        "totalBudgets": 2,
        "totalBudgetAmount": 1000.0,
        "totalSpent": 570.0,
        "onTrackBudgets": 1,
        "exceededBudgets": 1,
    }


def test_pct_change() -> None:
    assert pct_change(0, 0) == 0
    assert pct_change(0, 5) == 100
    assert pct_change(50, 75) == 50
    assert pct_change(200, 100) == -50
