import json
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from cache import NullCache
from categorizer import ensure_rule_categories, seed_default_categories
from database import Base
from errors import NotFoundError, ValidationError
from job_queue import JobQueue
from models import AiCategoryRule, Category, PaymentMethod
from schemas import ExpenseIn, ExpenseUpdate
from services import ExpenseFilters, ExpenseService

NOW = datetime(2026, 10, 19, 12, 0)


class FixedRandom:
    def uniform(self, a: float, b: float) -> float:
        return 1.0

    def choice(self, seq):
        return seq[0]


def _service(session: Session, user_id: int = 1) -> ExpenseService:
    seed_default_categories(session)
    ensure_rule_categories(session)
    jobs = JobQueue(session, cache=NullCache(), rng=FixedRandom())
    return ExpenseService(session, user_id, cache=NullCache(), jobs=jobs, now=NOW)


def _category(session: Session, name: str) -> Category:
    return session.scalar(select(Category).where(Category.name == name))


def _expense(
    amount: str,
    description: str,
    day: date,
    category_id=None,
    **extra,
) -> ExpenseIn:
    return ExpenseIn(
        amount=Decimal(amount),
        description=description,
        transaction_date=day,
        payment_method=extra.pop("payment_method", PaymentMethod.credit_card),
        category_id=category_id,
        **extra,
    )


def test_create_with_category_keeps_it() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        shopping = _category(session, "Shopping")

        expense, queued = service.create(
            _expense(
                "12.50",
                "  Gift wrap  ",
                date(2026, 10, 18),
                shopping.id,
                tags=["home", "Home", "gifts"],
            )
        )

        assert queued is False
        assert expense.amount_cents == 1250
        assert expense.description == "Gift wrap"
        assert expense.category.name == "Shopping"
        assert expense.ai_confidence is None
        assert sorted(tag.name for tag in expense.tags) == ["gifts", "home"]


def test_create_without_category_is_auto_categorized() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        expense, queued = service.create(
            _expense("4.75", "Starbucks coffee", date(2026, 10, 18), merchant="Starbucks")
        )

        assert queued is True
        assert expense.category.name == "Food & Dining"
        assert expense.ai_confidence == pytest.approx(0.85)


def test_unmatched_expense_lands_in_other() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        expense, queued = service.create(_expense("9.99", "xyzzy plugh", date(2026, 10, 18)))

        assert queued is True
        assert expense.category.name == "Other"
        assert expense.ai_confidence == pytest.approx(0.15)


def test_category_correction_is_recorded() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        expense, _ = service.create(
            _expense("4.75", "Starbucks coffee", date(2026, 10, 18), merchant="Starbucks")
        )
        shopping = _category(session, "Shopping")

        updated = service.update(expense.id, ExpenseUpdate(category_id=shopping.id))

        assert updated.category.name == "Shopping"
        assert updated.ai_confidence is None
        rule = session.scalar(select(AiCategoryRule))
        assert rule.category_id == shopping.id
        assert json.loads(rule.keywords_json) == ["Starbucks coffee", "Starbucks"]


def test_manual_category_change_is_not_learned() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        shopping = _category(session, "Shopping")
        expense, _ = service.create(_expense("20", "Groceries run", date(2026, 10, 1), food.id))

        service.update(expense.id, ExpenseUpdate(category_id=shopping.id))

        assert session.scalar(select(func.count(AiCategoryRule.id))) == 0


def test_update_fields_and_reject_clearing_required_ones() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        expense, _ = service.create(_expense("20", "Lunch", date(2026, 10, 1), food.id))

        updated = service.update(
            expense.id,
            ExpenseUpdate(amount=Decimal("22.40"), merchant="Deli", tags=["work"]),
        )
        assert updated.amount_cents == 2240
        assert updated.merchant == "Deli"
        assert [tag.name for tag in updated.tags] == ["work"]
        assert updated.category_id == food.id

        with pytest.raises(ValidationError, match="description cannot be empty"):
            service.update(expense.id, ExpenseUpdate(description=None))


def test_expenses_are_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        expense, _ = service.create(_expense("20", "Lunch", date(2026, 10, 1), food.id))

        intruder = _service(session, user_id=2)
        with pytest.raises(NotFoundError, match="Expense not found"):
            intruder.get(expense.id)
        with pytest.raises(NotFoundError):
            intruder.delete(expense.id)
        assert intruder.list()["pagination"]["totalCount"] == 0

        service.delete(expense.id)
        with pytest.raises(NotFoundError):
            service.get(expense.id)


def test_unknown_category_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        with pytest.raises(NotFoundError, match="Category not found"):
            service.create(_expense("20", "Lunch", date(2026, 10, 1), 999))


def test_list_filters_and_paginates() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        transport = _category(session, "Transportation")
        service.create(_expense("8.00", "Team lunch", date(2026, 10, 3), food.id, tags=["work"]))
        service.create(_expense("30.00", "Dinner out", date(2026, 10, 10), food.id))
        service.create(
            _expense(
                "45.00",
                "Train ticket",
                date(2026, 10, 12),
                transport.id,
                payment_method=PaymentMethod.debit_card,
            )
        )

        first = service.list(page=1, limit=2)
        assert [e["description"] for e in first["expenses"]] == ["Train ticket", "Dinner out"]
        assert first["pagination"] == {
            "currentPage": 1,
            "totalPages": 2,
            "totalCount": 3,
            "hasNextPage": True,
            "hasPrevPage": False,
            "limit": 2,
        }
        assert first["summary"]["totalAmount"] == 83.0
        assert first["summary"]["maxAmount"] == 45.0

        second = service.list(page=2, limit=2)
        assert [e["description"] for e in second["expenses"]] == ["Team lunch"]
        assert "summary" not in second

        by_category = service.list(ExpenseFilters(category_id=food.id), sort_by="amount", sort_order="asc")
        assert [e["amount"] for e in by_category["expenses"]] == [8.0, 30.0]

        assert service.list(ExpenseFilters(min_amount=Decimal("10"), max_amount=Decimal("40")))[
            "pagination"
        ]["totalCount"] == 1
        assert service.list(ExpenseFilters(search="LUNCH"))["pagination"]["totalCount"] == 1
        assert service.list(ExpenseFilters(tags=["Work"]))["pagination"]["totalCount"] == 1
        assert (
            service.list(ExpenseFilters(payment_method=PaymentMethod.debit_card))["expenses"][0][
                "description"
            ]
            == "Train ticket"
        )
        assert (
            service.list(
                ExpenseFilters(start_date=date(2026, 10, 5), end_date=date(2026, 10, 11))
            )["pagination"]["totalCount"]
            == 1
        )


def test_bulk_import_reports_failed_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")

        result = service.bulk_import(
            [
                _expense("10", "Sandwich", date(2026, 10, 1), food.id),
                _expense("11", "Mystery", date(2026, 10, 2), 999),
                _expense("12", "Lyft downtown", date(2026, 10, 3)),
            ]
        )

        assert result["success"] == 2
        assert result["failed"] == 1
        assert result["errors"] == [
            {"index": 1, "error": "Category not found", "expenseData": "Mystery"}
        ]
        assert result["aiCategorizations"] == 1
        assert result["aiServiceStatus"] == "rule_based"

        listed = service.list()
        assert listed["pagination"]["totalCount"] == 2
        names = {e["description"]: e["category"]["name"] for e in listed["expenses"]}
        assert names == {"Sandwich": "Food & Dining", "Lyft downtown": "Transportation"}


def test_search_scores_by_matched_field() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        service.create(_expense("10", "Team lunch", date(2026, 10, 1), food.id))
        service.create(
            _expense("11", "Sandwich", date(2026, 10, 2), food.id, merchant="Lunchbox Deli")
        )
        service.create(
            _expense("12", "Sushi", date(2026, 10, 3), food.id, notes="lunch with client")
        )
        service.create(_expense("13", "Pasta", date(2026, 10, 4), food.id, tags=["lunch"]))
        service.create(_expense("14", "Dinner", date(2026, 10, 5), food.id))

        result = service.search("lunch")

        assert result["count"] == 4
        assert result["hasMore"] is False
        assert [(r["description"], r["matchType"]) for r in result["results"]] == [
            ("Team lunch", "description"),
            ("Sandwich", "merchant"),
            ("Sushi", "notes"),
            ("Pasta", "tag"),
        ]
        assert result["results"][0]["matchScore"] == 1.0

        with pytest.raises(ValidationError, match="at least 2 characters"):
            service.search(" a ")


def test_stats_for_current_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        food = _category(session, "Food & Dining")
        transport = _category(session, "Transportation")
        service.create(_expense("20", "Dinner", date(2026, 10, 5), food.id))
        service.create(_expense("10", "Bus pass", date(2026, 10, 18), transport.id, is_recurring=True))
        service.create(_expense("99", "Old dinner", date(2026, 9, 30), food.id))

        stats = service.stats("month")

        assert stats["dateRange"] == {"start": "2026-10-01", "end": "2026-10-19"}
        assert stats["summary"]["total"] == 30.0
        assert stats["summary"]["count"] == 2
        assert stats["categories"][0]["category"]["name"] == "Food & Dining"
        assert stats["categories"][0]["percentage"] == 66.7
        assert stats["insights"]["recurringExpenses"] == 1
        assert stats["insights"]["recentTransactions"] == 1

        with pytest.raises(ValidationError, match="Unsupported period"):
            service.stats("decade")


def test_categorize_and_bulk_recategorize() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        other = _category(session, "Other")
        expense, _ = service.create(
            _expense("60", "Shell gas station", date(2026, 10, 10), other.id)
        )

        result = service.categorize(expense.id)
        assert result["status"] == "completed"
        assert result["currentConfidence"] is None
        assert result["suggestion"]["categoryName"] == "Transportation"
        assert service.get(expense.id).category.name == "Transportation"

        # confidence is now high enough that nothing is left to recategorize
        assert service.bulk_recategorize()["processedCount"] == 0

        service.create(_expense("5", "Stamps", date(2026, 10, 11), other.id))
        queued = service.bulk_recategorize(limit=10)
        assert queued["expensesFound"] == 1
        assert queued["status"] == "skipped"


def test_tag_usage_and_recurring() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = _service(session)
        bills = _category(session, "Bills & Utilities")
        service.create(
            _expense("50", "Internet", date(2026, 9, 1), bills.id, is_recurring=True, tags=["home"])
        )
        service.create(
            _expense("50", "Internet", date(2026, 10, 1), bills.id, is_recurring=True, tags=["home", "fixed"])
        )

        tags = service.tags()
        assert tags["tags"][0] == {"tag": "home", "usageCount": 2, "lastUsed": "2026-10-01"}
        assert tags["summary"] == {"totalUniqueTags": 2, "mostUsedTag": "home"}

        recurring = service.recurring()
        assert recurring["count"] == 2
        assert recurring["expenses"][0]["transactionDate"] == "2026-10-01"
