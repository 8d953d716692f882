"""Budget arithmetic: spend summary, linear projection and alert rules.

Everything here is pure. Callers pass ``now`` explicitly and hand in the
expense amounts already scoped to the budget's user, category and window.
Money is ``Decimal`` throughout so that ``remaining + spent == amount``
holds exactly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Union

Number = Union[int, float, Decimal]

STATUS_GOOD = "good"
STATUS_CAUTION = "caution"
STATUS_CRITICAL = "critical"
STATUS_EXCEEDED = "exceeded"

CAUTION_THRESHOLD = Decimal("75")
CRITICAL_THRESHOLD = Decimal("90")
EXCEEDED_THRESHOLD = Decimal("100")

ZERO = Decimal("0")
ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class Projection:
    estimated_total: Decimal
    days_remaining: int
    daily_average: Decimal
    on_track: bool
    days_elapsed: int
    total_days: int


@dataclass(frozen=True)
class BudgetSummary:
    amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    status: str
    transactions: int
    average_transaction: Decimal
    projection: Projection
    start_date: date
    end_date: date
    budget_id: Optional[int] = None
    category_name: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "budgetAmount": float(self.amount),
            "spent": float(self.spent),
            "remaining": float(self.remaining),
            "percentage": round(float(self.percentage), 1),
            "status": self.status,
            "transactions": self.transactions,
            "averageTransaction": float(self.average_transaction),
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "projection": {
                "estimatedTotal": float(self.projection.estimated_total),
                "daysRemaining": self.projection.days_remaining,
                "dailyAverage": float(self.projection.daily_average),
                "onTrack": self.projection.on_track,
            },
        }


@dataclass(frozen=True)
class Alert:
    budget_id: Optional[int]
    category_name: str
    kind: str
    message: str
    severity: str

    def to_dict(self) -> dict[str, object]:
        return {
            "budgetId": self.budget_id,
            "categoryName": self.category_name,
            "type": self.kind,
            "message": self.message,
            "severity": self.severity,
        }


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def cents_to_decimal(cents: int) -> Decimal:
    return Decimal(cents) / 100


def budget_status(percentage: Decimal) -> str:
    if percentage >= EXCEEDED_THRESHOLD:
        return STATUS_EXCEEDED
    if percentage >= CRITICAL_THRESHOLD:
        return STATUS_CRITICAL
    if percentage >= CAUTION_THRESHOLD:
        return STATUS_CAUTION
    return STATUS_GOOD


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / ONE_DAY.total_seconds())


def compute_summary(
    amount: Number,
    start_date: date,
    end_date: date,
    expense_amounts: Iterable[Number],
    now: datetime,
    *,
    budget_id: Optional[int] = None,
    category_name: str = "",
) -> BudgetSummary:
    budget_amount = to_decimal(amount)
    amounts = [to_decimal(value) for value in expense_amounts]
    spent = sum(amounts, ZERO)
    remaining = budget_amount - spent
    if budget_amount > 0:
        percentage = spent / budget_amount * 100
    else:
        percentage = ZERO
    count = len(amounts)

    total_days = _ceil_days(end_date - start_date)
    days_elapsed = _ceil_days(now - datetime.combine(start_date, time.min))
    days_remaining = max(0, total_days - days_elapsed)
    # after end_date the rate is still sampled up to now
    if days_elapsed > 0:
        daily_average = spent / days_elapsed
        estimated_total = daily_average * total_days
        on_track = estimated_total <= budget_amount
    else:
        daily_average = ZERO
        estimated_total = ZERO
        on_track = True

    return BudgetSummary(
        amount=budget_amount,
        spent=spent,
        remaining=remaining,
        percentage=percentage,
        status=budget_status(percentage),
        transactions=count,
        average_transaction=spent / count if count else ZERO,
        projection=Projection(
            estimated_total=estimated_total,
            days_remaining=days_remaining,
            daily_average=daily_average,
            on_track=on_track,
            days_elapsed=days_elapsed,
            total_days=total_days,
        ),
        start_date=start_date,
        end_date=end_date,
        budget_id=budget_id,
        category_name=category_name,
    )


def alert_for(summary: BudgetSummary) -> Optional[Alert]:
    if summary.percentage >= EXCEEDED_THRESHOLD:
        overage = summary.spent - summary.amount
        return Alert(
            budget_id=summary.budget_id,
            category_name=summary.category_name,
            kind="exceeded",
            message=f"Budget exceeded by {overage:.2f}",
            severity="error",
        )
    if summary.percentage >= CRITICAL_THRESHOLD:
        return Alert(
            budget_id=summary.budget_id,
            category_name=summary.category_name,
            kind="approaching",
            message=f"Approaching budget limit ({summary.percentage:.1f}% used)",
            severity="warning",
        )
    projection = summary.projection
    if not projection.on_track and projection.days_remaining > 0:
        overage = projection.estimated_total - summary.amount
        return Alert(
            budget_id=summary.budget_id,
            category_name=summary.category_name,
            kind="projection",
            message=f"Current spending pace will exceed budget by {overage:.2f}",
            severity="warning",
        )
    return None


def generate_alerts(summaries: Iterable[BudgetSummary]) -> list[Alert]:
    """At most one alert per budget, in input order."""
    alerts: list[Alert] = []
    for summary in summaries:
        alert = alert_for(summary)
        if alert is not None:
            alerts.append(alert)
    return alerts


def budget_stats(summaries: Iterable[BudgetSummary]) -> dict[str, object]:
    items = list(summaries)
    return {
        "totalBudgets": len(items),
        "totalBudgetAmount": float(sum((s.amount for s in items), ZERO)),
        "totalSpent": float(sum((s.spent for s in items), ZERO)),
        "onTrackBudgets": sum(1 for s in items if s.projection.on_track),
        "exceededBudgets": sum(1 for s in items if s.status == STATUS_EXCEEDED),
    }


def pct_change(old: Number, new: Number) -> float:
    old_value = float(old)
    new_value = float(new)
    if old_value == 0:
        return 100.0 if new_value > 0 else 0.0
    return (new_value - old_value) / old_value * 100
