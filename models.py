from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PaymentMethod(str, Enum):
    credit_card = "CREDIT_CARD"
    debit_card = "DEBIT_CARD"
    cash = "CASH"
    bank_transfer = "BANK_TRANSFER"
    digital_wallet = "DIGITAL_WALLET"


class BudgetPeriod(str, Enum):
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    yearly = "YEARLY"


class ReportType(str, Enum):
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    yearly = "YEARLY"
    custom = "CUSTOM"


def _values_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


PAYMENT_METHOD_ENUM = _values_enum(PaymentMethod, "paymentmethod")
BUDGET_PERIOD_ENUM = _values_enum(BudgetPeriod, "budgetperiod")
REPORT_TYPE_ENUM = _values_enum(ReportType, "reporttype")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    password_resets: Mapped[list["PasswordReset"]] = relationship(
        "PasswordReset", back_populates="user", cascade="all, delete-orphan"
    )


class PasswordReset(Base, TimestampMixin):
    __tablename__ = "password_resets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="password_resets")

    __table_args__ = (
        Index("ix_password_resets_user_created", "user_id", "created_at"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6B7280")
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="folder")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", secondary="expense_tags", back_populates="tags"
    )


expense_tags = Table(
    "expense_tags",
    Base.metadata,
    Column(
        "expense_id",
        Integer,
        ForeignKey("expenses.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant: Mapped[Optional[str]] = mapped_column(String(100))
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float)

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="expense_tags", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "transaction_date"),
        Index(
            "ix_expenses_user_category_date",
            "user_id",
            "category_id",
            "transaction_date",
        ),
        Index("ix_expenses_user_payment", "user_id", "payment_method"),
        Index("ix_expenses_user_merchant", "user_id", "merchant"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "ai_confidence IS NULL OR (ai_confidence >= 0 AND ai_confidence <= 1)",
            name="ck_expenses_ai_confidence_range",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(BUDGET_PERIOD_ENUM, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("end_date >= start_date", name="ck_budget_dates_ordered"),
        Index("ix_budgets_user_active", "user_id", "is_active"),
        # one active budget per (user, category, period, start_date)
        Index(
            "uq_budgets_active_scope",
            "user_id",
            "category_id",
            "period",
            "start_date",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class Report(Base, TimestampMixin):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[ReportType] = mapped_column(REPORT_TYPE_ENUM, nullable=False)
    parameters_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_scheduled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    schedule_config_json: Mapped[Optional[str]] = mapped_column(Text)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    file_path: Mapped[Optional[str]] = mapped_column(String(500))

    __table_args__ = (Index("ix_reports_user_created", "user_id", "created_at"),)


class AiCategoryRule(Base, TimestampMixin):
    __tablename__ = "ai_category_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False
    )
    keywords_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    patterns_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category")
