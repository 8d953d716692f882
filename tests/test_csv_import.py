from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from cache import NullCache
from categorizer import ensure_rule_categories, seed_default_categories
from csv_utils import parse_amount, parse_csv, parse_payment_method, sanitize_csv_value
from database import Base
from errors import NotFoundError, ValidationError
from job_queue import JobQueue
from models import Category, Expense, PaymentMethod
from services import CategoryService, ExpenseService

HEADER = "Date,Amount,Description,Category,Merchant,Payment Method,Notes\n"


class FixedRandom:
    def uniform(self, a: float, b: float) -> float:
        return 1.0

    def choice(self, seq):
        return seq[0]


def _session_with_categories(session: Session) -> None:
    seed_default_categories(session)
    ensure_rule_categories(session)
    session.add_all([Category(name="Pets"), Category(name="Gets")])
    session.commit()


def test_parse_amount_formats() -> None:
    assert parse_amount("12.50") == 1250
    assert parse_amount("€ 7,5") == 750
    assert parse_amount("1.234,56") == 123456
    with pytest.raises(ValueError, match="Amount must be positive"):
        parse_amount("0")


def test_parse_payment_method() -> None:
    assert parse_payment_method("credit card") == PaymentMethod.credit_card
    assert parse_payment_method("digital-wallet") == PaymentMethod.digital_wallet
    assert parse_payment_method("") == PaymentMethod.cash
    with pytest.raises(ValueError, match="Unknown payment method"):
        parse_payment_method("barter")


def test_parse_csv_collects_row_errors() -> None:
    content = HEADER + (
        "2026-10-01,12.50,Lunch,Food & Dining,Deli,credit card,\n"
        '05.10.2026,"1.234,56",Laptop,,,BANK_TRANSFER,new machine\n'
        "2026-10-03,abc,Broken,,,,\n"
        "2026-10-04,5,,,,,\n"
        "10/06/2026,-3,Refund,,,,\n"
    )
    rows, errors = parse_csv(content)

    assert [row.description for row in rows] == ["Lunch", "Laptop"]
    assert rows[0].category == "Food & Dining"
    assert rows[0].payment_method == PaymentMethod.credit_card
    assert rows[1].date == date(2026, 10, 5)
    assert rows[1].amount_cents == 123456
    assert rows[1].category is None
    assert rows[1].notes == "new machine"
    assert errors == [
        "Row 3: Invalid amount",
        "Row 4: Description is required",
        "Row 5: Amount must be positive",
    ]


def test_sanitize_csv_value() -> None:
    assert sanitize_csv_value("=SUM(A1)") == "\t=SUM(A1)"
    assert sanitize_csv_value("https://evil.example") == "\thttps://evil.example"
    assert sanitize_csv_value("  Coffee ") == "Coffee"
    assert sanitize_csv_value("") == ""


def test_resolve_category_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _session_with_categories(session)
        categories = CategoryService(session)

        assert categories.resolve_name("  food & DINING ").name == "Food & Dining"
        assert categories.resolve_name("Shoping").name == "Shopping"
        with pytest.raises(ValidationError, match="ambiguous; matches: Gets, Pets"):
            categories.resolve_name("Bets")
        with pytest.raises(NotFoundError, match="Category 'Xylophone' not found"):
            categories.resolve_name("Xylophone")


def test_import_csv_creates_resolvable_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _session_with_categories(session)
        jobs = JobQueue(session, cache=NullCache(), rng=FixedRandom())
        service = ExpenseService(
            session, 1, cache=NullCache(), jobs=jobs, now=datetime(2026, 10, 19)
        )
        content = HEADER + (
            "2026-10-01,12.50,Lunch,food & dining,Deli,credit card,\n"
            '05.10.2026,"1.234,56",Laptop,Shoping,,BANK_TRANSFER,new machine\n'
            "2026-10-07,20,Dog treats,Bets,,cash,\n"
            "2026-10-08,7,Mystery,Xylophone,,,\n"
            "2026-10-09,abc,Broken,,,,\n"
        )

        result = service.import_csv(content)

        assert result["success"] == 2
        assert result["failed"] == 3
        assert result["aiCategorizations"] == 0
        assert result["errors"] == [
            "Row 5: Invalid amount",
            "Dog treats: Category 'Bets' is ambiguous; matches: Gets, Pets",
            "Mystery: Category 'Xylophone' not found",
        ]

        imported = {
            e.description: e for e in session.scalars(select(Expense)).all()
        }
        assert imported["Lunch"].category.name == "Food & Dining"
        assert imported["Laptop"].category.name == "Shopping"
        assert imported["Laptop"].amount_cents == 123456


def test_import_csv_with_nothing_valid() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _session_with_categories(session)
        service = ExpenseService(session, 1, cache=NullCache(), now=datetime(2026, 10, 19))

        result = service.import_csv(HEADER + "not-a-date,5,Lunch,,,,\n")

        assert result == {
            "success": 0,
            "failed": 1,
            "errors": ["Row 1: Invalid date: 'not-a-date'"],
            "aiCategorizations": 0,
        }
