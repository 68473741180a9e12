from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import CurrencyCode, Frequency, TransactionType


class UserIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=80)
    currency: CurrencyCode = CurrencyCode.inr


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)
    is_default: bool = False


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    type: TransactionType
    amount_cents: int
    category_id: Optional[int]
    note: Optional[str]
    origin_rule_id: Optional[int]
    created_at: datetime
    updated_at: datetime


class RecurringRuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)
    frequency: Frequency
    interval_count: int = Field(default=1, gt=0)
    anchor_date: date
    end_date: Optional[date] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    is_active: bool = True

    @model_validator(mode="after")
    def _check_schedule(self) -> "RecurringRuleIn":
        if self.end_date and self.end_date < self.anchor_date:
            raise ValueError("end_date must not be before anchor_date")
        if self.day_of_week is not None and self.frequency != Frequency.weekly:
            raise ValueError("day_of_week only applies to weekly rules")
        if self.day_of_month is not None and self.frequency not in (
            Frequency.monthly,
            Frequency.yearly,
        ):
            raise ValueError("day_of_month only applies to monthly or yearly rules")
        return self


class RecurringRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    amount_cents: int
    category_id: Optional[int]
    note: Optional[str]
    frequency: Frequency
    interval_count: int
    anchor_date: date
    next_due_date: date
    last_materialized_date: Optional[date]
    end_date: Optional[date]
    day_of_month: Optional[int]
    day_of_week: Optional[int]
    is_active: bool


class OpeningBalanceIn(BaseModel):
    opening_balance_cents: int


class CurrencyIn(BaseModel):
    currency: str = Field(..., min_length=3, max_length=3)


class MonthlyBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    opening_balance_cents: int
    monthly_income_cents: int
    monthly_expenses_cents: int
    closing_balance_cents: int
    opening_balance_is_override: bool


class MaterializationResult(BaseModel):
    transactions_created: int
    processed_at: datetime


class TotalsOut(BaseModel):
    total_income_cents: int
    total_expenses_cents: int
    net_balance_cents: int
    transaction_count: int


class CategoryTotalsOut(BaseModel):
    name: str
    color: Optional[str]
    income_cents: int
    expenses_cents: int
    total_cents: int
