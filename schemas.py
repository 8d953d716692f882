from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from models import BudgetPeriod, PaymentMethod, ReportType


class ApiModel(BaseModel):
    """Request bodies arrive in camelCase; services read snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterIn(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class LoginIn(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordIn(ApiModel):
    email: EmailStr


class ResetPasswordIn(ApiModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=128)


class ExpenseIn(ApiModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)
    transaction_date: date
    merchant: Optional[str] = Field(default=None, max_length=100)
    payment_method: PaymentMethod
    category_id: Optional[int] = None
    is_recurring: bool = False
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_url: Optional[str] = Field(default=None, max_length=500)


class ExpenseUpdate(ApiModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    transaction_date: Optional[date] = None
    merchant: Optional[str] = Field(default=None, max_length=100)
    payment_method: Optional[PaymentMethod] = None
    category_id: Optional[int] = None
    is_recurring: Optional[bool] = None
    tags: Optional[list[str]] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    receipt_url: Optional[str] = Field(default=None, max_length=500)


class BulkImportIn(ApiModel):
    expenses: list[ExpenseIn] = Field(..., min_length=1, max_length=1000)


class CategorizeIn(ApiModel):
    description: str = Field(..., min_length=1, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=100)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    payment_method: Optional[PaymentMethod] = None


class BulkRecategorizeIn(ApiModel):
    category_id: Optional[int] = None
    limit: int = Field(default=100, ge=1, le=1000)


class BudgetIn(ApiModel):
    category_id: int
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    period: BudgetPeriod
    start_date: Optional[date] = None


class BudgetUpdate(ApiModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None


class ReportParameters(ApiModel):
    start_date: date
    end_date: date
    categories: list[int] = Field(default_factory=list)
    include_charts: bool = True
    group_by: Literal["day", "week", "month"] = "month"


class ReportIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    type: ReportType
    parameters: ReportParameters
    is_scheduled: bool = False
    schedule_config: Optional[dict] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value


class ReceiptBulkDeleteIn(ApiModel):
    public_ids: list[str] = Field(..., min_length=1, max_length=50)


class CSVRow(BaseModel):
    date: date
    amount_cents: int
    description: str
    category: Optional[str]
    merchant: Optional[str]
    payment_method: PaymentMethod
    notes: Optional[str]
