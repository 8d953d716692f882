from __future__ import annotations

import json
import logging
import math
import re
import secrets
import statistics
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo

from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from auth import (
    create_access_token,
    hash_password,
    validate_password_strength,
    verify_password,
)
from budgets import (
    BudgetSummary,
    budget_stats,
    cents_to_decimal,
    compute_summary,
    generate_alerts,
    pct_change,
)
from cache import CacheService, get_cache
from categorizer import OTHER_CATEGORY, RULE_TABLE, categorization_stats
from config import get_settings
from csv_utils import parse_csv, report_to_csv
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from job_queue import JobQueue
from models import (
    Budget,
    BudgetPeriod,
    Category,
    Expense,
    PasswordReset,
    PaymentMethod,
    Report,
    ReportType,
    Tag,
    User,
    expense_tags,
)
from periods import add_months, period_bounds, resolve_window, week_start
from report_formats import report_to_pdf, report_to_xlsx
from schemas import (
    BudgetIn,
    BudgetUpdate,
    ExpenseIn,
    ExpenseUpdate,
    LoginIn,
    RegisterIn,
    ReportIn,
    ReportParameters,
)

logger = logging.getLogger(__name__)

OVERVIEW_TTL = 600
TRENDS_TTL = 600
CATEGORY_ANALYSIS_TTL = 600
BUDGET_PERFORMANCE_TTL = 300
SPENDING_INSIGHTS_TTL = 900
BUDGETS_TTL = 300

RESET_TOKEN_TTL = timedelta(hours=1)
MAX_RESETS_PER_HOUR = 3
LOW_CONFIDENCE = 0.5
REQUIRED_EXPENSE_FIELDS = {"description", "transaction_date", "payment_method", "is_recurring"}
WEEKDAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def local_now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def amount_to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def cents_to_float(cents: Optional[float]) -> float:
    return round(float(cents or 0) / 100, 2)


def payment_label(method: PaymentMethod | str) -> str:
    token = getattr(method, "value", method)
    return token.replace("_", " ").title()


def median(values: list[float]) -> float:
    return float(statistics.median(values)) if values else 0.0


def _month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def bucket_key(day: date, group_by: str) -> str:
    if group_by == "day":
        return day.isoformat()
    if group_by == "week":
        return week_start(day).isoformat()
    return _month_key(day)


def category_payload(category: Optional[Category]) -> Optional[dict[str, object]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "icon": category.icon,
    }


def expense_payload(expense: Expense) -> dict[str, object]:
    return {
        "id": expense.id,
        "amount": cents_to_float(expense.amount_cents),
        "description": expense.description,
        "transactionDate": expense.transaction_date.isoformat(),
        "merchant": expense.merchant,
        "paymentMethod": expense.payment_method.value,
        "isRecurring": expense.is_recurring,
        "notes": expense.notes,
        "receiptUrl": expense.receipt_url,
        "aiConfidence": expense.ai_confidence,
        "category": category_payload(expense.category),
        "tags": sorted(tag.name for tag in expense.tags),
        "createdAt": expense.created_at.isoformat() if expense.created_at else None,
        "updatedAt": expense.updated_at.isoformat() if expense.updated_at else None,
    }


def budget_payload(
    budget: Budget, summary: Optional[BudgetSummary] = None
) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": budget.id,
        "categoryId": budget.category_id,
        "amount": cents_to_float(budget.amount_cents),
        "period": budget.period.value,
        "startDate": budget.start_date.isoformat(),
        "endDate": budget.end_date.isoformat(),
        "isActive": budget.is_active,
        "category": category_payload(budget.category),
    }
    if summary is not None:
        payload["summary"] = summary.to_dict()
    return payload


def user_payload(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "isActive": user.is_active,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


def report_payload(report: Report) -> dict[str, object]:
    return {
        "id": report.id,
        "name": report.name,
        "type": report.type.value,
        "parameters": json.loads(report.parameters_json or "{}"),
        "isScheduled": report.is_scheduled,
        "scheduleConfig": (
            json.loads(report.schedule_config_json)
            if report.schedule_config_json
            else None
        ),
        "generatedAt": report.generated_at.isoformat() if report.generated_at else None,
        "createdAt": report.created_at.isoformat() if report.created_at else None,
        "updatedAt": report.updated_at.isoformat() if report.updated_at else None,
    }


@dataclass
class ExpenseFilters:
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_recurring: Optional[bool] = None
    tags: list[str] = field(default_factory=list)

    def cache_token(self) -> str:
        data = {k: v for k, v in self.__dict__.items() if v not in (None, [])}
        return json.dumps(data, sort_keys=True, default=str)


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            if not name.strip():
                continue
            tag = self.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags

    def usage(self, since: date, limit: int = 200) -> dict[str, object]:
        usage_count = func.count(Expense.id)
        rows = self.session.execute(
            select(Tag.name, usage_count.label("usage"), func.max(Expense.transaction_date))
            .join(expense_tags, expense_tags.c.tag_id == Tag.id)
            .join(Expense, Expense.id == expense_tags.c.expense_id)
            .where(
                Tag.user_id == self.user_id,
                Expense.user_id == self.user_id,
                Expense.transaction_date >= since,
            )
            .group_by(Tag.id, Tag.name)
            .order_by(usage_count.desc(), Tag.name)
            .limit(limit)
        ).all()
        tags = [
            {
                "tag": name,
                "usageCount": int(count),
                "lastUsed": last_used.isoformat() if last_used else None,
            }
            for name, count, last_used in rows
        ]
        return {
            "tags": tags,
            "summary": {
                "totalUniqueTags": len(tags),
                "mostUsedTag": tags[0]["tag"] if tags else None,
            },
        }


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if category is None:
            raise NotFoundError("Category not found")
        return category

    def get_or_create_other(self) -> Category:
        other = self.session.scalar(select(Category).where(Category.name == OTHER_CATEGORY))
        if other:
            return other
        other = Category(
            name=OTHER_CATEGORY,
            description="Miscellaneous expenses",
            color="#6B7280",
            icon="more-horizontal",
            is_default=True,
        )
        self.session.add(other)
        self.session.flush()
        logger.info("category_created: name=Other")
        return other

    def resolve_name(self, raw_name: str) -> Category:
        """Exact (case-insensitive) name, else the single category within edit distance 1."""
        input_lower = raw_name.strip().lower()
        exact = self.session.scalar(
            select(Category).where(func.lower(Category.name) == input_lower)
        )
        if exact:
            return exact

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in self.session.scalars(select(Category)).all():
            name_lower = (category.name or "").strip().lower()
            dist = int(Levenshtein.distance(input_lower, name_lower))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            raise NotFoundError(f"Category '{raw_name}' not found")
        if len(best) > 1:
            options = ", ".join(sorted({c.name for c in best}))
            raise ValidationError(
                f"Category '{raw_name}' is ambiguous; matches: {options}"
            )
        return best[0]

    def list_with_usage(self, user_id: int, since: date) -> list[dict[str, object]]:
        usage = (
            select(
                Expense.category_id.label("category_id"),
                func.count(Expense.id).label("usage_count"),
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total_cents"),
            )
            .where(Expense.user_id == user_id, Expense.transaction_date >= since)
            .group_by(Expense.category_id)
            .subquery()
        )
        usage_count = func.coalesce(usage.c.usage_count, 0)
        rows = self.session.execute(
            select(Category, usage_count, func.coalesce(usage.c.total_cents, 0))
            .outerjoin(usage, usage.c.category_id == Category.id)
            .order_by(Category.is_default.desc(), usage_count.desc(), Category.name)
        ).all()
        return [
            {
                "id": category.id,
                "name": category.name,
                "description": category.description,
                "color": category.color,
                "icon": category.icon,
                "isDefault": category.is_default,
                "stats": {
                    "usageCount": int(count),
                    "totalAmount": cents_to_float(total),
                },
            }
            for category, count, total in rows
        ]


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[CacheService] = None,
        jobs: Optional[JobQueue] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache if cache is not None else get_cache()
        self.jobs = jobs or JobQueue(session, cache=self.cache)
        self.now = now

    def _now(self) -> datetime:
        return self.now or local_now()

    def _conditions(self, filters: ExpenseFilters) -> list:
        conditions = [Expense.user_id == self.user_id]
        if filters.category_id:
            conditions.append(Expense.category_id == filters.category_id)
        if filters.start_date:
            conditions.append(Expense.transaction_date >= filters.start_date)
        if filters.end_date:
            conditions.append(Expense.transaction_date <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            conditions.append(
                or_(
                    Expense.description.ilike(pattern),
                    Expense.merchant.ilike(pattern),
                    Expense.notes.ilike(pattern),
                )
            )
        if filters.payment_method:
            conditions.append(Expense.payment_method == filters.payment_method)
        if filters.min_amount is not None:
            conditions.append(Expense.amount_cents >= amount_to_cents(filters.min_amount))
        if filters.max_amount is not None:
            conditions.append(Expense.amount_cents <= amount_to_cents(filters.max_amount))
        if filters.is_recurring is not None:
            conditions.append(Expense.is_recurring == filters.is_recurring)
        if filters.tags:
            lowered = [tag.strip().lower() for tag in filters.tags if tag.strip()]
            conditions.append(Expense.tags.any(func.lower(Tag.name).in_(lowered)))
        return conditions

    def list(
        self,
        filters: Optional[ExpenseFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "transactionDate",
        sort_order: str = "desc",
    ) -> dict[str, object]:
        filters = filters or ExpenseFilters()
        page = max(1, page)
        limit = min(max(1, limit), 100)
        key = CacheService.generate_key(
            "expenses",
            self.user_id,
            "list",
            filters.cache_token(),
            page,
            limit,
            sort_by,
            sort_order,
        )
        return self.cache.remember(
            key, 180, lambda: self._list(filters, page, limit, sort_by, sort_order)
        )

    def _list(
        self,
        filters: ExpenseFilters,
        page: int,
        limit: int,
        sort_by: str,
        sort_order: str,
    ) -> dict[str, object]:
        conditions = self._conditions(filters)
        sort_columns = {
            "amount": Expense.amount_cents,
            "merchant": Expense.merchant,
            "transactionDate": Expense.transaction_date,
        }
        column = sort_columns.get(sort_by, Expense.transaction_date)
        ordering = column.asc() if sort_order == "asc" else column.desc()

        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), selectinload(Expense.tags))
            .where(*conditions)
            .order_by(ordering, Expense.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        expenses = self.session.scalars(stmt).all()
        total_count = self.session.scalar(
            select(func.count(Expense.id)).where(*conditions)
        ) or 0
        total_pages = math.ceil(total_count / limit) if total_count else 0

        result: dict[str, object] = {
            "expenses": [expense_payload(expense) for expense in expenses],
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalCount": total_count,
                "hasNextPage": page < total_pages,
                "hasPrevPage": page > 1,
                "limit": limit,
            },
        }
        if page == 1:
            total, average, minimum, maximum, count = self.session.execute(
                select(
                    func.sum(Expense.amount_cents),
                    func.avg(Expense.amount_cents),
                    func.min(Expense.amount_cents),
                    func.max(Expense.amount_cents),
                    func.count(Expense.id),
                ).where(*conditions)
            ).one()
            result["summary"] = {
                "totalAmount": cents_to_float(total),
                "averageAmount": cents_to_float(average),
                "minAmount": cents_to_float(minimum),
                "maxAmount": cents_to_float(maximum),
                "count": int(count or 0),
            }
        return result

    def get(self, expense_id: int) -> Expense:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category), selectinload(Expense.tags))
            .where(Expense.user_id == self.user_id, Expense.id == expense_id)
            .execution_options(populate_existing=True)
        )
        expense = self.session.scalar(stmt)
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def _build(self, data: ExpenseIn, other: Optional[Category] = None) -> tuple[Expense, bool]:
        needs_categorization = data.category_id is None
        if needs_categorization:
            category = other or CategoryService(self.session).get_or_create_other()
        else:
            category = CategoryService(self.session).get(data.category_id)
        expense = Expense(
            user_id=self.user_id,
            category_id=category.id,
            amount_cents=amount_to_cents(data.amount),
            description=data.description.strip(),
            transaction_date=data.transaction_date,
            merchant=(data.merchant or "").strip() or None,
            payment_method=data.payment_method,
            is_recurring=data.is_recurring,
            notes=data.notes,
            receipt_url=data.receipt_url,
            ai_confidence=0.1 if needs_categorization else None,
        )
        if data.tags:
            expense.tags = TagService(self.session, self.user_id).resolve(data.tags)
        return expense, needs_categorization

    def _queue_categorization(self, expense: Expense) -> Optional[dict[str, Any]]:
        return self.jobs.add(
            "categorize-expense",
            {
                "expenseId": expense.id,
                "description": expense.description,
                "merchant": expense.merchant,
                "amount": cents_to_float(expense.amount_cents),
                "paymentMethod": expense.payment_method.value,
            },
        )

    def create(self, data: ExpenseIn) -> tuple[Expense, bool]:
        """Returns the expense and whether automatic categorization was queued."""
        expense, needs_categorization = self._build(data)
        self.session.add(expense)
        self.session.commit()
        logger.info(
            f"expense_created: user_id={self.user_id} expense_id={expense.id} "
            f"auto_categorize={needs_categorization}"
        )

        queued = False
        if needs_categorization:
            queued = self._queue_categorization(expense) is not None
        self.cache.invalidate_user(self.user_id)
        return self.get(expense.id), queued

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_dump(exclude_unset=True)

        correction: Optional[dict[str, Any]] = None
        new_category_id = fields.pop("category_id", None)
        if new_category_id is not None and new_category_id != expense.category_id:
            CategoryService(self.session).get(new_category_id)
            previous_confidence = expense.ai_confidence
            if previous_confidence is not None and previous_confidence > 0.1:
                correction = {
                    "originalCategoryId": expense.category_id,
                    "correctedCategoryId": new_category_id,
                    "description": fields.get("description", expense.description),
                    "merchant": fields.get("merchant", expense.merchant),
                }
            expense.category_id = new_category_id
            expense.ai_confidence = None

        if "amount" in fields:
            if fields["amount"] is None:
                raise ValidationError("Amount must be positive")
            expense.amount_cents = amount_to_cents(fields.pop("amount"))
        if "tags" in fields:
            names = fields.pop("tags") or []
            expense.tags = TagService(self.session, self.user_id).resolve(names)
        for name, value in fields.items():
            if value is None and name in REQUIRED_EXPENSE_FIELDS:
                raise ValidationError(f"{name} cannot be empty")
            setattr(expense, name, value)

        self.session.commit()
        if correction is not None:
            self.jobs.add("learn-from-correction", correction)
        self.cache.invalidate_user(self.user_id)
        logger.info(f"expense_updated: user_id={self.user_id} expense_id={expense_id}")
        return self.get(expense_id)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()
        self.cache.invalidate_user(self.user_id)
        logger.info(f"expense_deleted: user_id={self.user_id} expense_id={expense_id}")

    def bulk_import(self, items: list[ExpenseIn]) -> dict[str, object]:
        started = time.perf_counter()
        other = CategoryService(self.session).get_or_create_other()
        self.session.commit()

        success = 0
        errors: list[dict[str, object]] = []
        to_categorize: list[Expense] = []
        for index, item in enumerate(items):
            try:
                with self.session.begin_nested():
                    expense, needs_categorization = self._build(item, other)
                    self.session.add(expense)
                    self.session.flush()
            except (ValueError, IntegrityError) as exc:
                errors.append(
                    {"index": index, "error": str(exc), "expenseData": item.description}
                )
                continue
            success += 1
            if needs_categorization:
                to_categorize.append(expense)
        self.session.commit()

        ai_categorizations = 0
        for expense in to_categorize:
            if self._queue_categorization(expense) is not None:
                ai_categorizations += 1

        self.cache.invalidate_user(self.user_id)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"expense_bulk_import: user_id={self.user_id} success={success} "
            f"failed={len(errors)} duration_ms={elapsed_ms}"
        )
        return {
            "success": success,
            "failed": len(errors),
            "errors": errors,
            "aiCategorizations": ai_categorizations,
            "processingTime": elapsed_ms,
            "aiServiceStatus": "rule_based",
            "averageTimePerExpense": round(elapsed_ms / len(items), 2) if items else 0,
        }

    def import_csv(self, content: str) -> dict[str, object]:
        rows, parse_errors = parse_csv(content)
        categories = CategoryService(self.session)
        items: list[ExpenseIn] = []
        errors: list[str] = list(parse_errors)
        for row in rows:
            category_id: Optional[int] = None
            if row.category:
                try:
                    category_id = categories.resolve_name(row.category).id
                except ValueError as exc:
                    errors.append(f"{row.description}: {exc}")
                    continue
            items.append(
                ExpenseIn(
                    amount=Decimal(row.amount_cents) / 100,
                    description=row.description,
                    transaction_date=row.date,
                    merchant=row.merchant,
                    payment_method=row.payment_method,
                    category_id=category_id,
                    notes=row.notes,
                )
            )
        if not items:
            return {
                "success": 0,
                "failed": len(errors),
                "errors": errors,
                "aiCategorizations": 0,
            }
        result = self.bulk_import(items)
        errors.extend(
            f"{item['expenseData']}: {item['error']}" for item in result["errors"]
        )
        return {
            "success": result["success"],
            "failed": len(errors),
            "errors": errors,
            "aiCategorizations": result["aiCategorizations"],
        }

    def stats(self, period: str = "month") -> dict[str, object]:
        key = CacheService.generate_key("expenses", self.user_id, "stats", period)
        return self.cache.remember(key, 600, lambda: self._stats(period))

    def _stats(self, period: str) -> dict[str, object]:
        now = self._now()
        today = now.date()
        if period == "week":
            start = today - timedelta(days=7)
        elif period == "year":
            start = date(today.year, 1, 1)
        elif period == "month":
            start = today.replace(day=1)
        else:
            raise ValidationError(f"Unsupported period: {period}")
        conditions = [
            Expense.user_id == self.user_id,
            Expense.transaction_date >= start,
            Expense.transaction_date <= today,
        ]

        total, average, minimum, maximum, count = self.session.execute(
            select(
                func.sum(Expense.amount_cents),
                func.avg(Expense.amount_cents),
                func.min(Expense.amount_cents),
                func.max(Expense.amount_cents),
                func.count(Expense.id),
            ).where(*conditions)
        ).one()
        total = int(total or 0)
        count = int(count or 0)

        category_total = func.sum(Expense.amount_cents)
        category_rows = self.session.execute(
            select(Category, category_total, func.count(Expense.id))
            .join(Expense, Expense.category_id == Category.id)
            .where(*conditions)
            .group_by(Category.id)
            .order_by(category_total.desc())
            .limit(10)
        ).all()
        method_total = func.sum(Expense.amount_cents)
        method_rows = self.session.execute(
            select(Expense.payment_method, method_total, func.count(Expense.id))
            .where(*conditions)
            .group_by(Expense.payment_method)
            .order_by(method_total.desc())
            .limit(5)
        ).all()
        ai_count, ai_avg = self.session.execute(
            select(func.count(Expense.id), func.avg(Expense.ai_confidence)).where(
                *conditions, Expense.ai_confidence.is_not(None)
            )
        ).one()
        recent_count = self.session.scalar(
            select(func.count(Expense.id)).where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= today - timedelta(days=7),
            )
        ) or 0
        recurring_count = self.session.scalar(
            select(func.count(Expense.id)).where(*conditions, Expense.is_recurring.is_(True))
        ) or 0

        days = max(1, math.ceil((now - datetime.combine(start, datetime.min.time())).total_seconds() / 86400))

        def share(value: int) -> float:
            return round(value / total * 100, 1) if total else 0.0

        return {
            "period": period,
            "dateRange": {"start": start.isoformat(), "end": today.isoformat()},
            "summary": {
                "total": cents_to_float(total),
                "count": count,
                "average": cents_to_float(average),
                "min": cents_to_float(minimum),
                "max": cents_to_float(maximum),
            },
            "categories": [
                {
                    "category": category_payload(category),
                    "total": cents_to_float(cat_total),
                    "count": int(cat_count),
                    "percentage": share(int(cat_total)),
                }
                for category, cat_total, cat_count in category_rows
            ],
            "paymentMethods": [
                {
                    "method": method.value,
                    "total": cents_to_float(m_total),
                    "count": int(m_count),
                    "percentage": share(int(m_total)),
                }
                for method, m_total, m_count in method_rows
            ],
            "aiCategorization": {
                "totalAiCategorized": int(ai_count or 0),
                "averageConfidence": round(float(ai_avg or 0), 2),
                "percentage": round(int(ai_count or 0) / count * 100, 1) if count else 0.0,
            },
            "insights": {
                "recentTransactions": int(recent_count),
                "recurringExpenses": int(recurring_count),
                "dailyAverage": round(total / 100 / days, 2),
            },
        }

    def recurring(self) -> dict[str, object]:
        key = CacheService.generate_key("expenses", self.user_id, "recurring")

        def produce() -> dict[str, object]:
            expenses = self.session.scalars(
                select(Expense)
                .options(joinedload(Expense.category), selectinload(Expense.tags))
                .where(Expense.user_id == self.user_id, Expense.is_recurring.is_(True))
                .order_by(Expense.transaction_date.desc(), Expense.id.desc())
                .limit(100)
            ).all()
            return {
                "expenses": [expense_payload(expense) for expense in expenses],
                "count": len(expenses),
            }

        return self.cache.remember(key, 1800, produce)

    def tags(self) -> dict[str, object]:
        since = self._now().date() - timedelta(days=365)
        return TagService(self.session, self.user_id).usage(since)

    def categorize(self, expense_id: int) -> dict[str, object]:
        expense = self.get(expense_id)
        current_confidence = expense.ai_confidence
        job = self._queue_categorization(expense)
        return {
            "jobId": job["id"] if job else None,
            "status": "completed" if job else "failed",
            "currentConfidence": current_confidence,
            "suggestion": (
                {key: job[key] for key in ("categoryId", "categoryName", "confidence", "reasoning")}
                if job
                else None
            ),
            "estimatedTime": 0,
        }

    def bulk_recategorize(
        self, limit: int = 100, category_id: Optional[int] = None
    ) -> dict[str, object]:
        conditions = [
            Expense.user_id == self.user_id,
            or_(Expense.ai_confidence.is_(None), Expense.ai_confidence < LOW_CONFIDENCE),
        ]
        if category_id:
            conditions.append(Expense.category_id == category_id)
        found = self.session.scalar(select(func.count(Expense.id)).where(*conditions)) or 0
        found = min(int(found), limit)
        if found == 0:
            return {
                "processedCount": 0,
                "estimatedTime": 0,
                "message": "No expenses found matching criteria",
            }
        job = self.jobs.add(
            "bulk-recategorize",
            {"userId": self.user_id, "limit": limit, "categoryId": category_id},
        )
        return {
            "jobId": job.get("id") if job else None,
            "status": "skipped" if job and job.get("skipped") else "processing",
            "expensesFound": found,
            "estimatedTime": found * 2,
        }

    def ai_status(self) -> dict[str, object]:
        return {
            "isConnected": True,
            "mode": "rule_based",
            "rules": len(RULE_TABLE),
            "stats": categorization_stats(self.session, self.user_id),
            "queue": self.jobs.stats(),
        }

    def insights(self, timeframe: int = 30) -> dict[str, object]:
        if timeframe < 1 or timeframe > 365:
            raise ValidationError("Timeframe must be between 1 and 365 days")
        key = CacheService.generate_key("expenses", self.user_id, "insights", timeframe)
        return self.cache.remember(key, 3600, lambda: self._insights(timeframe))

    def _insights(self, timeframe: int) -> dict[str, object]:
        today = self._now().date()
        start = today - timedelta(days=timeframe)
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= start,
                Expense.transaction_date <= today,
            )
        ).all()

        total = sum(e.amount_cents for e in expenses)
        count = len(expenses)
        category_counts: dict[str, int] = defaultdict(int)
        category_totals: dict[str, int] = defaultdict(int)
        merchant_totals: dict[str, int] = defaultdict(int)
        weekly: dict[date, int] = defaultdict(int)
        weekend = weekday = 0
        recurring = 0
        for expense in expenses:
            category_counts[expense.category.name] += 1
            category_totals[expense.category.name] += expense.amount_cents
            if expense.merchant:
                merchant_totals[expense.merchant] += expense.amount_cents
            weekly[week_start(expense.transaction_date)] += expense.amount_cents
            if expense.transaction_date.weekday() >= 5:
                weekend += expense.amount_cents
            else:
                weekday += expense.amount_cents
            if expense.is_recurring:
                recurring += 1

        spending_trend = 0.0
        if weekly:
            latest = max(weekly)
            recent = [v for k, v in weekly.items() if k >= latest - timedelta(days=14)]
            older = [v for k, v in weekly.items() if k < latest - timedelta(days=14)]
            recent_avg = sum(recent) / len(recent) if recent else 0
            older_avg = sum(older) / len(older) if older else 0
            if older_avg > 0:
                spending_trend = (recent_avg - older_avg) / older_avg * 100

        if spending_trend > 5:
            direction = "increasing"
        elif spending_trend < -5:
            direction = "decreasing"
        else:
            direction = "stable"

        def top(mapping: dict[str, int]) -> Optional[str]:
            return max(mapping, key=mapping.get) if mapping else None

        return {
            "timeframe": {
                "days": timeframe,
                "startDate": start.isoformat(),
                "endDate": today.isoformat(),
            },
            "summary": {
                "totalExpenses": cents_to_float(total),
                "totalTransactions": count,
                "averageTransaction": cents_to_float(total / count) if count else 0.0,
                "largestExpense": cents_to_float(max((e.amount_cents for e in expenses), default=0)),
                "averageDailySpending": round(total / 100 / timeframe, 2),
            },
            "patterns": {
                "mostFrequentCategory": top(category_counts),
                "mostExpensiveCategory": top(category_totals),
                "topMerchant": top(merchant_totals),
                "weekendVsWeekdayRatio": round(weekend / weekday, 2) if weekday else 0.0,
                "recurringPercentage": round(recurring / count * 100, 1) if count else 0.0,
            },
            "trends": {
                "spendingTrend": round(spending_trend, 1),
                "trendDirection": direction,
            },
        }

    def search(self, query: str, limit: int = 20) -> dict[str, object]:
        term = (query or "").strip()
        if len(term) < 2:
            raise ValidationError("Search query must be at least 2 characters")
        limit = min(max(1, limit), 50)
        pattern = f"%{term}%"
        score = case(
            (Expense.description.ilike(pattern), 1.0),
            (Expense.merchant.ilike(pattern), 0.8),
            (Expense.notes.ilike(pattern), 0.6),
            else_=0.5,
        )
        stmt = (
            select(Expense, score.label("score"))
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                or_(
                    Expense.description.ilike(pattern),
                    Expense.merchant.ilike(pattern),
                    Expense.notes.ilike(pattern),
                    Expense.tags.any(func.lower(Tag.name) == term.lower()),
                ),
            )
            .order_by(score.desc(), Expense.transaction_date.desc(), Expense.id.desc())
            .limit(limit + 1)
        )
        rows = self.session.execute(stmt).all()
        match_types = {1.0: "description", 0.8: "merchant", 0.6: "notes"}
        results = [
            {
                "id": expense.id,
                "amount": cents_to_float(expense.amount_cents),
                "description": expense.description,
                "merchant": expense.merchant,
                "transactionDate": expense.transaction_date.isoformat(),
                "category": {
                    "name": expense.category.name,
                    "color": expense.category.color,
                    "icon": expense.category.icon,
                },
                "matchScore": float(match_score),
                "matchType": match_types.get(float(match_score), "tag"),
            }
            for expense, match_score in rows[:limit]
        ]
        return {
            "query": term,
            "results": results,
            "count": len(results),
            "hasMore": len(rows) > limit,
        }


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[CacheService] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache if cache is not None else get_cache()
        self.now = now

    def _now(self) -> datetime:
        return self.now or local_now()

    def _get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.id == budget_id,
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
            )
        )
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def _check_conflict(
        self,
        category_id: int,
        period: BudgetPeriod,
        start_date: date,
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.category_id == category_id,
            Budget.period == period,
            Budget.start_date == start_date,
            Budget.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError("Budget already exists for this category and period")

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Budget already exists for this category and period"
            ) from exc
        self.cache.invalidate_user(self.user_id)

    def summarize(self, budget: Budget) -> BudgetSummary:
        amounts = self.session.scalars(
            select(Expense.amount_cents).where(
                Expense.user_id == self.user_id,
                Expense.category_id == budget.category_id,
                Expense.transaction_date >= budget.start_date,
                Expense.transaction_date <= budget.end_date,
            )
        ).all()
        return compute_summary(
            cents_to_decimal(budget.amount_cents),
            budget.start_date,
            budget.end_date,
            [cents_to_decimal(cents) for cents in amounts],
            self._now(),
            budget_id=budget.id,
            category_name=budget.category.name if budget.category else "",
        )

    def create(self, data: BudgetIn) -> tuple[Budget, BudgetSummary]:
        CategoryService(self.session).get(data.category_id)
        start, end = period_bounds(data.period, data.start_date or self._now().date())
        self._check_conflict(data.category_id, data.period, start)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=amount_to_cents(data.amount),
            period=data.period,
            start_date=start,
            end_date=end,
            is_active=True,
        )
        self.session.add(budget)
        self._commit()
        logger.info(
            f"budget_created: user_id={self.user_id} budget_id={budget.id} "
            f"period={data.period.value} start={start}"
        )
        budget = self._get(budget.id)
        return budget, self.summarize(budget)

    def update(self, budget_id: int, data: BudgetUpdate) -> tuple[Budget, BudgetSummary]:
        budget = self._get(budget_id)
        if data.amount is not None:
            budget.amount_cents = amount_to_cents(data.amount)
        if data.period is not None:
            start, end = period_bounds(
                data.period, data.start_date or self._now().date()
            )
            self._check_conflict(budget.category_id, data.period, start, exclude_id=budget.id)
            budget.period = data.period
            budget.start_date = start
            budget.end_date = end
        self._commit()
        logger.info(f"budget_updated: user_id={self.user_id} budget_id={budget_id}")
        budget = self._get(budget_id)
        return budget, self.summarize(budget)

    def delete(self, budget_id: int) -> None:
        budget = self._get(budget_id)
        budget.is_active = False
        self._commit()
        logger.info(f"budget_deleted: user_id={self.user_id} budget_id={budget_id}")

    def get(self, budget_id: int) -> tuple[Budget, BudgetSummary]:
        budget = self._get(budget_id)
        return budget, self.summarize(budget)

    def summaries(
        self, period: Optional[BudgetPeriod] = None
    ) -> list[tuple[Budget, BudgetSummary]]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        if period is not None:
            stmt = stmt.where(Budget.period == period)
        return [(budget, self.summarize(budget)) for budget in self.session.scalars(stmt).all()]

    def list(self, period: Optional[BudgetPeriod] = None) -> list[dict[str, object]]:
        key = CacheService.generate_key(
            "budgets", self.user_id, "list", period.value if period else "all"
        )
        return self.cache.remember(
            key,
            BUDGETS_TTL,
            lambda: [budget_payload(b, s) for b, s in self.summaries(period)],
        )

    def alerts(self) -> list[dict[str, object]]:
        return [alert.to_dict() for alert in generate_alerts(s for _, s in self.summaries())]

    def stats(self) -> dict[str, object]:
        return budget_stats(s for _, s in self.summaries())


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[CacheService] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.cache = cache if cache is not None else get_cache()
        self.now = now

    def _now(self) -> datetime:
        return self.now or local_now()

    def _expenses(
        self,
        start: date,
        end: date,
        category_ids: Optional[list[int]] = None,
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= start,
                Expense.transaction_date <= end,
            )
            .order_by(Expense.transaction_date.desc(), Expense.id.desc())
        )
        if category_ids:
            stmt = stmt.where(Expense.category_id.in_(category_ids))
        return list(self.session.scalars(stmt).all())

    def _totals(self, start: date, end: date) -> tuple[int, int]:
        total, count = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0), func.count(Expense.id)).where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= start,
                Expense.transaction_date <= end,
            )
        ).one()
        return int(total), int(count)

    def overview(self) -> dict[str, object]:
        key = CacheService.generate_key("overview", self.user_id, "v5")
        return self.cache.remember(key, OVERVIEW_TTL, self._overview)

    def _overview(self) -> dict[str, object]:
        now = self._now()
        today = now.date()
        month_start = today.replace(day=1)
        last_month_start = add_months(month_start, -1)
        last_month_end = month_start - timedelta(days=1)

        current_total, current_count = self._totals(month_start, today)
        last_total, last_count = self._totals(last_month_start, last_month_end)
        recent_total, _ = self._totals(today - timedelta(days=7), today)
        previous_total, _ = self._totals(
            today - timedelta(days=14), today - timedelta(days=8)
        )

        def change(old: int, new: int) -> float:
            return round((new - old) / old * 1000) / 10 if old > 0 else 0.0

        category_total = func.sum(Expense.amount_cents)
        top_categories = self.session.execute(
            select(Category, category_total, func.count(Expense.id))
            .join(Expense, Expense.category_id == Category.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= month_start,
                Expense.transaction_date <= today,
            )
            .group_by(Category.id)
            .order_by(category_total.desc())
            .limit(3)
        ).all()

        recent = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= today - timedelta(days=7),
            )
            .order_by(Expense.transaction_date.desc(), Expense.id.desc())
            .limit(3)
        ).all()

        budgets = self.session.scalars(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active.is_(True),
                Budget.start_date <= today,
                Budget.end_date >= today,
            )
            .order_by(Budget.created_at.desc(), Budget.id.desc())
            .limit(3)
        ).all()
        budget_service = BudgetService(self.session, self.user_id, cache=self.cache, now=now)
        budget_status = []
        for budget in budgets:
            summary = budget_service.summarize(budget)
            budget_status.append(
                {
                    "id": budget.id,
                    "amount": float(summary.amount),
                    "spent": float(summary.spent),
                    "remaining": float(summary.remaining),
                    "percentage": round(float(summary.percentage), 1),
                    "period": budget.period.value,
                    "category": {"name": budget.category.name, "color": budget.category.color},
                    "status": summary.status,
                }
            )

        return {
            "overview": {
                "currentMonth": {
                    "total": cents_to_float(current_total),
                    "count": current_count,
                    "average": cents_to_float(current_total / current_count) if current_count else 0.0,
                },
                "lastMonth": {
                    "total": cents_to_float(last_total),
                    "count": last_count,
                    "average": cents_to_float(last_total / last_count) if last_count else 0.0,
                },
                "trends": {
                    "totalChange": change(last_total, current_total),
                    "countChange": change(last_count, current_count),
                    "velocityChange": change(previous_total, recent_total),
                },
                "velocity": {
                    "recent7Days": cents_to_float(recent_total),
                    "previous7Days": cents_to_float(previous_total),
                },
            },
            "categoryBreakdown": [
                {
                    "categoryId": category.id,
                    "categoryName": category.name,
                    "categoryColor": category.color,
                    "categoryIcon": category.icon,
                    "total": cents_to_float(total),
                    "count": int(count),
                }
                for category, total, count in top_categories
            ],
            "recentTransactions": [
                {
                    "id": expense.id,
                    "amount": cents_to_float(expense.amount_cents),
                    "description": expense.description,
                    "transactionDate": expense.transaction_date.isoformat(),
                    "merchant": expense.merchant,
                    "category": {
                        "name": expense.category.name,
                        "color": expense.category.color,
                    },
                }
                for expense in recent
            ],
            "budgetStatus": budget_status,
        }

    def trends(
        self,
        period: Optional[str] = "month",
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        group_by: str = "month",
        category_ids: Optional[list[int]] = None,
    ) -> dict[str, object]:
        if group_by not in ("day", "week", "month", "category", "paymentMethod"):
            raise ValidationError(f"Unsupported groupBy: {group_by}")
        window = resolve_window(period, start_date, end_date, today=self._now().date())
        key = CacheService.generate_key(
            "analytics",
            self.user_id,
            "trends",
            window.start,
            window.end,
            group_by,
            ",".join(str(c) for c in sorted(category_ids or [])),
        )

        def produce() -> dict[str, object]:
            expenses = self._expenses(window.start, window.end, category_ids)
            return {
                "trends": self._group(expenses, group_by),
                "groupBy": group_by,
                "period": window.slug,
                "dateRange": {
                    "start": window.start.isoformat(),
                    "end": window.end.isoformat(),
                },
            }

        return self.cache.remember(key, TRENDS_TTL, produce)

    def _group(self, expenses: list[Expense], group_by: str) -> list[dict[str, object]]:
        if group_by == "category":
            buckets: dict[str, list[Expense]] = defaultdict(list)
            for expense in expenses:
                buckets[expense.category.name].append(expense)
            rows = []
            for name, items in buckets.items():
                total = sum(e.amount_cents for e in items)
                rows.append(
                    {
                        "key": name,
                        "value": cents_to_float(total),
                        "count": len(items),
                        "average": cents_to_float(total / len(items)),
                        "color": items[0].category.color,
                        "icon": items[0].category.icon,
                    }
                )
            return sorted(rows, key=lambda row: row["value"], reverse=True)

        if group_by == "paymentMethod":
            methods: dict[str, list[int]] = defaultdict(list)
            for expense in expenses:
                methods[payment_label(expense.payment_method)].append(expense.amount_cents)
            rows = [
                {
                    "key": label,
                    "value": cents_to_float(sum(amounts)),
                    "count": len(amounts),
                    "average": cents_to_float(sum(amounts) / len(amounts)),
                }
                for label, amounts in methods.items()
            ]
            return sorted(rows, key=lambda row: row["value"], reverse=True)

        periods: dict[str, list[int]] = defaultdict(list)
        for expense in expenses:
            periods[bucket_key(expense.transaction_date, group_by)].append(expense.amount_cents)
        return [
            {
                "key": key,
                "value": cents_to_float(sum(amounts)),
                "count": len(amounts),
                "average": cents_to_float(sum(amounts) / len(amounts)),
                "median": cents_to_float(median(amounts)),
            }
            for key, amounts in sorted(periods.items())
        ]

    def category_analysis(self) -> dict[str, object]:
        key = CacheService.generate_key("analytics", self.user_id, "categories")
        return self.cache.remember(key, CATEGORY_ANALYSIS_TTL, self._category_analysis)

    def _category_analysis(self) -> dict[str, object]:
        today = self._now().date()
        month_start = today.replace(day=1)
        history_start = add_months(month_start, -6)

        current: dict[int, list[int]] = defaultdict(list)
        for expense in self._expenses(month_start, today):
            current[expense.category_id].append(expense.amount_cents)
        history: dict[int, list[Expense]] = defaultdict(list)
        for expense in self._expenses(history_start, month_start - timedelta(days=1)):
            history[expense.category_id].append(expense)

        analysis = []
        for category in self.session.scalars(select(Category).order_by(Category.name)).all():
            amounts = current.get(category.id, [])
            past = history.get(category.id, [])
            current_total = sum(amounts)
            history_total = sum(e.amount_cents for e in past)
            if current_total == 0 and history_total == 0:
                continue

            monthly_average = history_total / 6
            total_change = pct_change(monthly_average, current_total)
            count_change = pct_change(len(past) / 6, len(amounts))

            insights: list[str] = []
            if abs(total_change) > 50:
                direction = "increase" if total_change > 0 else "decrease"
                insights.append(f"Significant {direction} in spending")
            if abs(count_change) > 30:
                insights.append(
                    "More frequent transactions"
                    if count_change > 0
                    else "Fewer transactions than usual"
                )
            if not amounts:
                insights.append("No spending this month in this category")

            monthly: dict[str, int] = defaultdict(int)
            for expense in past:
                monthly[_month_key(expense.transaction_date)] += expense.amount_cents

            analysis.append(
                {
                    "category": category_payload(category),
                    "currentMonth": {
                        "total": cents_to_float(current_total),
                        "count": len(amounts),
                        "average": cents_to_float(current_total / len(amounts)) if amounts else 0.0,
                        "min": cents_to_float(min(amounts, default=0)),
                        "max": cents_to_float(max(amounts, default=0)),
                    },
                    "historical": {
                        "total": cents_to_float(history_total),
                        "count": len(past),
                        "average": cents_to_float(history_total / len(past)) if past else 0.0,
                        "monthlyAverage": cents_to_float(monthly_average),
                    },
                    "trends": {
                        "totalChange": round(total_change, 1),
                        "isIncreasing": total_change > 5,
                        "monthlyData": [
                            {"month": month, "total": cents_to_float(total)}
                            for month, total in sorted(monthly.items())
                        ],
                    },
                    "insights": insights,
                }
            )
        analysis.sort(key=lambda item: item["currentMonth"]["total"], reverse=True)
        return {"analysis": analysis}

    def budget_performance(self, period: Optional[BudgetPeriod] = None) -> dict[str, object]:
        key = CacheService.generate_key(
            "analytics", self.user_id, "budgets", period.value if period else "all"
        )
        return self.cache.remember(
            key, BUDGET_PERFORMANCE_TTL, lambda: self._budget_performance(period)
        )

    def _budget_performance(self, period: Optional[BudgetPeriod]) -> dict[str, object]:
        service = BudgetService(self.session, self.user_id, cache=self.cache, now=self._now())
        performance = []
        for budget, summary in service.summaries(period):
            projection = summary.projection
            progress = (
                min(100.0, projection.days_elapsed / projection.total_days * 100)
                if projection.total_days > 0
                else 0.0
            )
            overage = max(Decimal("0"), projection.estimated_total - summary.amount)
            performance.append(
                {
                    "budget": {
                        "id": budget.id,
                        "amount": float(summary.amount),
                        "period": budget.period.value,
                        "startDate": budget.start_date.isoformat(),
                        "endDate": budget.end_date.isoformat(),
                    },
                    "category": {"name": budget.category.name, "color": budget.category.color},
                    "performance": {
                        "spent": float(summary.spent),
                        "remaining": float(summary.remaining),
                        "percentage": round(float(summary.percentage), 1),
                        "transactionCount": summary.transactions,
                        "averageTransaction": round(float(summary.average_transaction), 2),
                    },
                    "timeline": {
                        "daysPassed": projection.days_elapsed,
                        "daysRemaining": projection.days_remaining,
                        "totalDays": projection.total_days,
                        "progressPercentage": round(max(0.0, progress), 1),
                    },
                    "projection": {
                        "avgDailySpending": round(float(projection.daily_average), 2),
                        "projectedTotal": round(float(projection.estimated_total), 2),
                        "projectedOverage": round(float(overage), 2),
                        "onTrack": projection.on_track,
                    },
                    "status": summary.status,
                }
            )
        return {"budgetPerformance": performance}

    def spending_insights(self) -> dict[str, object]:
        key = CacheService.generate_key("analytics", self.user_id, "insights")
        return self.cache.remember(key, SPENDING_INSIGHTS_TTL, self._spending_insights)

    def _spending_insights(self) -> dict[str, object]:
        today = self._now().date()
        window_start = today - timedelta(days=30)
        previous_start = today - timedelta(days=60)

        current = self._expenses(window_start, today)
        previous = self._expenses(previous_start, window_start - timedelta(days=1))

        def stats(items: list[Expense]) -> dict[str, float]:
            total = sum(e.amount_cents for e in items)
            return {
                "total": cents_to_float(total),
                "count": len(items),
                "average": cents_to_float(total / len(items)) if items else 0.0,
            }

        current_stats = stats(current)
        previous_stats = stats(previous)

        weekday = sum(e.amount_cents for e in current if e.transaction_date.weekday() < 5)
        weekend = sum(e.amount_cents for e in current if e.transaction_date.weekday() >= 5)

        merchants: dict[str, list[int]] = defaultdict(list)
        for expense in current:
            if expense.merchant:
                merchants[expense.merchant].append(expense.amount_cents)
        top_merchants = sorted(
            (
                {"merchant": name, "total": cents_to_float(sum(amounts)), "count": len(amounts)}
                for name, amounts in merchants.items()
            ),
            key=lambda row: row["total"],
            reverse=True,
        )[:10]

        return {
            "insights": {
                "period": {
                    "current": current_stats,
                    "previous": previous_stats,
                    "change": {
                        name: round(pct_change(previous_stats[name], current_stats[name]), 1)
                        for name in ("total", "count", "average")
                    },
                },
                "weekdayVsWeekend": {
                    "weekday": cents_to_float(weekday),
                    "weekend": cents_to_float(weekend),
                    "ratio": round(weekend / weekday, 2) if weekday else 0.0,
                },
                "topMerchants": top_merchants,
                "unusual": self._unusual(current, window_start),
            }
        }

    def _unusual(self, current: list[Expense], window_start: date) -> list[dict[str, object]]:
        baseline = self._expenses(
            window_start - timedelta(days=90), window_start - timedelta(days=1)
        )
        unusual: list[dict[str, object]] = []

        baseline_avg = (
            sum(e.amount_cents for e in baseline) / len(baseline) if baseline else 0
        )
        threshold = baseline_avg * 3
        if threshold > 0:
            large = [e for e in current if e.amount_cents >= threshold]
            large.sort(key=lambda e: e.amount_cents, reverse=True)
            for expense in large[:5]:
                unusual.append(
                    {
                        "type": "large_transaction",
                        "description": f"Unusually large expense: {expense.description}",
                        "amount": cents_to_float(expense.amount_cents),
                        "category": expense.category.name,
                    }
                )

        known = {e.merchant for e in baseline if e.merchant}
        new_merchants: dict[str, int] = defaultdict(int)
        for expense in current:
            if expense.merchant and expense.merchant not in known:
                new_merchants[expense.merchant] += expense.amount_cents
        for name, total in sorted(new_merchants.items(), key=lambda kv: kv[1], reverse=True)[:3]:
            unusual.append(
                {
                    "type": "new_merchant",
                    "description": f"New merchant: {name}",
                    "amount": cents_to_float(total),
                }
            )

        daily: dict[date, int] = defaultdict(int)
        for expense in current:
            daily[expense.transaction_date] += expense.amount_cents
        if daily:
            average = sum(daily.values()) / len(daily)
            spikes = [(day, total) for day, total in sorted(daily.items()) if total > average * 2]
            for day, total in spikes[:3]:
                unusual.append(
                    {
                        "type": "spending_spike",
                        "description": f"High spending day: {day.isoformat()}",
                        "amount": cents_to_float(total),
                    }
                )
        return unusual[:5]


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", value).strip("-").lower()
    return slug or "report"


class ReportService:
    FORMATS = {
        "pdf": ("application/pdf", "pdf"),
        "csv": ("text/csv", "csv"),
        "excel": (
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "xlsx",
        ),
    }

    def __init__(self, session: Session, user_id: int, now: Optional[datetime] = None) -> None:
        self.session = session
        self.user_id = user_id
        self.now = now

    def _now(self) -> datetime:
        return self.now or local_now()

    def list(
        self, page: int = 1, limit: int = 10, report_type: Optional[ReportType] = None
    ) -> dict[str, object]:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        conditions = [Report.user_id == self.user_id]
        if report_type is not None:
            conditions.append(Report.type == report_type)
        reports = self.session.scalars(
            select(Report)
            .where(*conditions)
            .order_by(Report.created_at.desc(), Report.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        total = self.session.scalar(select(func.count(Report.id)).where(*conditions)) or 0
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "reports": [report_payload(report) for report in reports],
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalCount": total,
                "hasNextPage": page < total_pages,
                "hasPrevPage": page > 1,
            },
        }

    def create(self, data: ReportIn) -> Report:
        params = data.parameters
        if params.start_date > params.end_date:
            raise ValidationError("Start date must be before end date")
        report = Report(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            parameters_json=params.model_dump_json(by_alias=True),
            is_scheduled=data.is_scheduled,
            schedule_config_json=(
                json.dumps(data.schedule_config) if data.schedule_config else None
            ),
        )
        self.session.add(report)
        self.session.commit()
        logger.info(f"report_created: user_id={self.user_id} report_id={report.id}")
        return report

    def get(self, report_id: int) -> Report:
        report = self.session.scalar(
            select(Report).where(Report.id == report_id, Report.user_id == self.user_id)
        )
        if not report:
            raise NotFoundError("Report not found")
        return report

    def _parameters(self, report: Report) -> ReportParameters:
        return ReportParameters.model_validate(json.loads(report.parameters_json or "{}"))

    def generate(self, report_id: int) -> dict[str, object]:
        report = self.get(report_id)
        data = self.gather_data(self._parameters(report))
        report.generated_at = datetime.utcnow()
        self.session.commit()
        logger.info(
            f"report_generated: user_id={self.user_id} report_id={report_id} "
            f"transactions={data['summary']['transactionCount']}"
        )
        return data

    def preview(self, params: ReportParameters) -> dict[str, object]:
        if params.start_date > params.end_date:
            raise ValidationError("Start date must be before end date")
        return self.gather_data(params)

    def download(self, report_id: int, fmt: str) -> tuple[bytes, str, str]:
        if fmt not in self.FORMATS:
            raise ValidationError("Invalid format. Supported formats: pdf, csv, excel")
        report = self.get(report_id)
        data = self.gather_data(self._parameters(report))
        media_type, ext = self.FORMATS[fmt]
        if fmt == "pdf":
            content = report_to_pdf(data, report.name)
        elif fmt == "csv":
            content = report_to_csv(data).encode("utf-8")
        else:
            content = report_to_xlsx(data, report.name)
        filename = f"{_slugify(report.name)}-{self._now().date().isoformat()}.{ext}"
        logger.info(
            f"report_downloaded: user_id={self.user_id} report_id={report_id} "
            f"format={fmt} size={len(content)}"
        )
        return content, media_type, filename

    def delete(self, report_id: int) -> None:
        report = self.get(report_id)
        self.session.delete(report)
        self.session.commit()
        logger.info(f"report_deleted: user_id={self.user_id} report_id={report_id}")

    def duplicate(self, report_id: int) -> Report:
        original = self.get(report_id)
        copy = Report(
            user_id=self.user_id,
            name=f"{original.name} (Copy)",
            type=original.type,
            parameters_json=original.parameters_json,
            is_scheduled=False,
            schedule_config_json=original.schedule_config_json,
        )
        self.session.add(copy)
        self.session.commit()
        return copy

    def gather_data(self, params: ReportParameters) -> dict[str, Any]:
        start, end = params.start_date, params.end_date
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= start,
                Expense.transaction_date <= end,
            )
            .order_by(Expense.transaction_date.desc(), Expense.id.desc())
        )
        if params.categories:
            stmt = stmt.where(Expense.category_id.in_(params.categories))
        expenses = list(self.session.scalars(stmt).all())

        amounts = [e.amount_cents for e in expenses]
        total = sum(amounts)
        count = len(expenses)

        length = end - start
        prev_end = start - timedelta(days=1)
        prev_start = prev_end - length
        prev_total, prev_count = self.session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0), func.count(Expense.id)).where(
                Expense.user_id == self.user_id,
                Expense.transaction_date >= prev_start,
                Expense.transaction_date <= prev_end,
            )
        ).one()
        comparison = {
            "totalChange": (total - prev_total) / prev_total * 100 if prev_total else 0.0,
            "countChange": (count - prev_count) / prev_count * 100 if prev_count else 0.0,
        }

        def share(value: int) -> float:
            return value / total * 100 if total else 0.0

        categories: dict[str, list[Expense]] = defaultdict(list)
        for expense in expenses:
            categories[expense.category.name].append(expense)
        category_breakdown = sorted(
            (
                {
                    "name": name,
                    "total": cents_to_float(sum(e.amount_cents for e in items)),
                    "count": len(items),
                    "percentage": share(sum(e.amount_cents for e in items)),
                    "color": items[0].category.color,
                    "avgPerTransaction": cents_to_float(
                        sum(e.amount_cents for e in items) / len(items)
                    ),
                    "minTransaction": cents_to_float(min(e.amount_cents for e in items)),
                    "maxTransaction": cents_to_float(max(e.amount_cents for e in items)),
                }
                for name, items in categories.items()
            ),
            key=lambda row: row["total"],
            reverse=True,
        )

        buckets: dict[str, list[int]] = defaultdict(list)
        for expense in expenses:
            key = bucket_key(expense.transaction_date, params.group_by)
            if params.group_by == "month":
                key = f"{key}-01"
            buckets[key].append(expense.amount_cents)
        monthly_trends = [
            {
                "period": key,
                "total": cents_to_float(sum(values)),
                "count": len(values),
                "average": cents_to_float(sum(values) / len(values)),
            }
            for key, values in sorted(buckets.items())
        ]

        merchants: dict[str, list[Expense]] = defaultdict(list)
        for expense in expenses:
            if expense.merchant:
                merchants[expense.merchant].append(expense)
        top_merchants = sorted(
            (
                {
                    "name": name,
                    "total": cents_to_float(sum(e.amount_cents for e in items)),
                    "count": len(items),
                    "avgAmount": cents_to_float(sum(e.amount_cents for e in items) / len(items)),
                    "categories": sorted({e.category.name for e in items}),
                    "lastTransaction": max(e.transaction_date for e in items).isoformat(),
                }
                for name, items in merchants.items()
            ),
            key=lambda row: row["total"],
            reverse=True,
        )[:15]

        methods: dict[str, list[int]] = defaultdict(list)
        for expense in expenses:
            methods[payment_label(expense.payment_method)].append(expense.amount_cents)
        payment_methods = sorted(
            (
                {
                    "name": label,
                    "total": cents_to_float(sum(values)),
                    "count": len(values),
                    "percentage": share(sum(values)),
                    "avgAmount": cents_to_float(sum(values) / len(values)),
                }
                for label, values in methods.items()
            ),
            key=lambda row: row["total"],
            reverse=True,
        )

        daily: dict[date, int] = defaultdict(int)
        by_weekday = [{"dayOfWeek": name, "total": 0, "count": 0} for name in WEEKDAY_NAMES]
        for expense in expenses:
            daily[expense.transaction_date] += expense.amount_cents
            slot = by_weekday[(expense.transaction_date.weekday() + 1) % 7]
            slot["total"] += expense.amount_cents
            slot["count"] += 1
        for slot in by_weekday:
            slot["total"] = cents_to_float(slot["total"])

        top_day = None
        if daily:
            day, amount = max(daily.items(), key=lambda kv: kv[1])
            top_day = {"date": day.isoformat(), "amount": cents_to_float(amount)}
        largest = max(expenses, key=lambda e: e.amount_cents, default=None)

        insights = {
            "spendingVelocity": cents_to_float(total / max(1, length.days)),
            "largestExpense": (
                {"description": largest.description, "amount": cents_to_float(largest.amount_cents)}
                if largest
                else None
            ),
            "smallestExpense": cents_to_float(min(amounts, default=0)),
            "medianExpense": cents_to_float(median(amounts)),
            "periodComparison": comparison,
            "topSpendingDay": top_day,
            "spendingByDayOfWeek": by_weekday,
            "recurringExpenses": sum(1 for e in expenses if e.is_recurring),
            "uniqueMerchants": len(merchants),
        }

        return {
            "summary": {
                "totalExpenses": cents_to_float(total),
                "transactionCount": count,
                "averageTransaction": cents_to_float(total / count) if count else 0.0,
                "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
                "periodComparison": comparison,
            },
            "categoryBreakdown": category_breakdown,
            "monthlyTrends": monthly_trends,
            "topMerchants": top_merchants,
            "paymentMethods": payment_methods,
            "insights": insights,
            "parameters": params.model_dump(by_alias=True, mode="json"),
            "rawTransactions": [
                {
                    "id": e.id,
                    "date": e.transaction_date.isoformat(),
                    "amount": cents_to_float(e.amount_cents),
                    "description": e.description,
                    "merchant": e.merchant,
                    "category": e.category.name,
                    "paymentMethod": e.payment_method.value,
                    "isRecurring": e.is_recurring,
                }
                for e in expenses
            ],
        }


class AuthService:
    def __init__(
        self,
        session: Session,
        jobs: Optional[JobQueue] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.session = session
        self.jobs = jobs or JobQueue(session)
        self.now = now

    def _now(self) -> datetime:
        return self.now or datetime.utcnow()

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email.strip().lower()))

    def register(self, data: RegisterIn) -> tuple[User, str]:
        if self._by_email(data.email):
            raise ConflictError("User already exists with this email")
        validate_password_strength(data.password)
        user = User(
            email=data.email.strip().lower(),
            password_hash=hash_password(data.password),
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            is_active=True,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("User already exists with this email") from exc
        logger.info(f"user_registered: user_id={user.id}")
        self.jobs.add(
            "send-email",
            {"type": "welcome", "to": user.email, "firstName": user.first_name},
        )
        return user, create_access_token(user.id)

    def login(self, data: LoginIn) -> tuple[User, str]:
        user = self._by_email(data.email)
        if user is None or not verify_password(data.password, user.password_hash):
            logger.warning("login_failed: bad credentials")
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise AuthenticationError("Account is deactivated")
        logger.info(f"user_logged_in: user_id={user.id}")
        return user, create_access_token(user.id)

    def me(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def forgot_password(self, email: str) -> None:
        """Same outcome whether or not the address is registered."""
        user = self._by_email(email)
        if user is None or not user.is_active:
            logger.info("password_reset_requested: unknown or inactive account")
            return

        now = self._now()
        recent = self.session.scalar(
            select(func.count(PasswordReset.id)).where(
                PasswordReset.user_id == user.id,
                PasswordReset.created_at >= now - timedelta(hours=1),
            )
        ) or 0
        if recent >= MAX_RESETS_PER_HOUR:
            logger.warning(f"password_reset_throttled: user_id={user.id}")
            return

        for pending in self.session.scalars(
            select(PasswordReset).where(
                PasswordReset.user_id == user.id, PasswordReset.used.is_(False)
            )
        ).all():
            pending.used = True

        token = secrets.token_hex(32)
        self.session.add(
            PasswordReset(
                user_id=user.id,
                token=token,
                expires_at=now + RESET_TOKEN_TTL,
                used=False,
                created_at=now,
                updated_at=now,
            )
        )
        self.session.commit()
        logger.info(f"password_reset_requested: user_id={user.id}")
        self.jobs.add(
            "send-email",
            {
                "type": "password-reset",
                "to": user.email,
                "firstName": user.first_name,
                "token": token,
            },
        )

    def _reset_record(self, token: str) -> PasswordReset:
        record = self.session.scalar(
            select(PasswordReset)
            .options(joinedload(PasswordReset.user))
            .where(PasswordReset.token == token)
        )
        if record is None:
            raise ValidationError("Invalid reset token")
        if record.used:
            raise ValidationError("Reset token has already been used")
        if record.expires_at < self._now():
            raise ValidationError("Reset token has expired")
        return record

    def validate_reset_token(self, token: str) -> dict[str, object]:
        record = self._reset_record(token)
        return {"valid": True, "email": record.user.email}

    def reset_password(self, token: str, password: str) -> None:
        record = self._reset_record(token)
        validate_password_strength(password)
        record.user.password_hash = hash_password(password)
        record.used = True
        self.session.commit()
        logger.info(f"password_reset_completed: user_id={record.user_id}")

    def cleanup_expired_tokens(self) -> int:
        result = self.session.execute(
            delete(PasswordReset).where(
                or_(PasswordReset.expires_at < self._now(), PasswordReset.used.is_(True))
            )
        )
        self.session.commit()
        removed = result.rowcount or 0
        logger.info(f"password_reset_cleanup: removed={removed}")
        return removed
