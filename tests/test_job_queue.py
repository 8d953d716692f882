from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from cache import NullCache
from categorizer import ensure_rule_categories, seed_default_categories
from database import Base
from job_queue import JobQueue
from models import Category, Expense, PaymentMethod


class FixedRandom:
    def uniform(self, a: float, b: float) -> float:
        return 1.0

    def choice(self, seq):
        return seq[0]


class RecordingEmail:
    def __init__(self) -> None:
        self.sent: list[tuple] = []

    def send_welcome_email(self, to: str, first_name: str) -> bool:
        self.sent.append(("welcome", to, first_name))
        return True

    def send_password_reset_email(self, to: str, first_name: str, token: str) -> bool:
        self.sent.append(("password-reset", to, token))
        return True


def _queue(session: Session, email=None) -> JobQueue:
    return JobQueue(session, cache=NullCache(), email_service=email, rng=FixedRandom())


def test_categorize_job_updates_expense() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        ensure_rule_categories(session)
        other = session.scalar(select(Category).where(Category.name == "Other"))
        expense = Expense(
            user_id=1,
            category_id=other.id,
            amount_cents=1500,
            description="Netflix monthly",
            transaction_date=date(2026, 10, 1),
            payment_method=PaymentMethod.credit_card,
            ai_confidence=0.1,
        )
        session.add(expense)
        session.commit()

        result = _queue(session).add(
            "categorize-expense", {"expenseId": expense.id, "description": expense.description}
        )

        assert result["id"].startswith("sync-")
        assert result["expenseId"] == expense.id
        assert result["categoryName"] == "Entertainment"
        session.refresh(expense)
        assert expense.category.name == "Entertainment"
        assert expense.ai_confidence == 0.8


def test_missing_expense_fails_quietly() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert _queue(session).add("categorize-expense", {"expenseId": 404}) is None


def test_unknown_job_type_is_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        assert _queue(session).add("render-video", {}) is None


def test_email_jobs_use_email_service() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        email = RecordingEmail()
        queue = _queue(session, email)

        welcome = queue.add(
            "send-email", {"type": "welcome", "to": "ana@example.com", "firstName": "Ana"}
        )
        reset = queue.add(
            "send-email",
            {
                "type": "password-reset",
                "to": "ana@example.com",
                "firstName": "Ana",
                "token": "abc",
            },
        )
        skipped = queue.add("send-email", {"type": "newsletter", "to": "ana@example.com"})

        assert welcome["sent"] is True
        assert reset["sent"] is True
        assert skipped == {"skipped": True}
        assert email.sent == [
            ("welcome", "ana@example.com", "Ana"),
            ("password-reset", "ana@example.com", "abc"),
        ]


def test_bulk_recategorize_is_a_no_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        queue = _queue(session)
        result = queue.add("bulk-recategorize", {"userId": 1, "limit": 10})
        assert result == {"processed": 0, "updated": 0, "failed": 0, "skipped": True}
        assert queue.stats()["mode"] == "sync"
