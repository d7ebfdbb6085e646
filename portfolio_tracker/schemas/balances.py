# portfolio_tracker/schemas/balances.py
"""Pydantic schemas for monthly income/expense balance sheets."""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from portfolio_tracker.models import BalanceEntryType


class BalanceEntryCreate(BaseModel):
    entry_type: BalanceEntryType
    concept: str = Field(..., min_length=1, max_length=200)
    amount_local: Decimal = Field(default=Decimal("0"), ge=0)
    amount_usd: Decimal = Field(default=Decimal("0"), ge=0)
    installment_current: int | None = Field(default=None, ge=1)
    installment_total: int | None = Field(default=None, ge=1)
    selected: bool = False

    @field_validator("concept")
    @classmethod
    def strip_concept(cls, v: str) -> str:
        return v.strip()


class BalanceEntryUpdate(BaseModel):
    entry_type: BalanceEntryType | None = None
    concept: str | None = Field(default=None, min_length=1, max_length=200)
    amount_local: Decimal | None = Field(default=None, ge=0)
    amount_usd: Decimal | None = Field(default=None, ge=0)
    installment_current: int | None = Field(default=None, ge=1)
    installment_total: int | None = Field(default=None, ge=1)
    selected: bool | None = None


class MonthlyBalanceCreate(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    gross_salary: Decimal = Field(..., ge=0)
    dollar_rate: Decimal = Field(..., gt=0, description="Local currency per USD for the month")
    max_salary_last_six_months: Decimal | None = Field(default=None, ge=0)
    entries: list[BalanceEntryCreate] = Field(default_factory=list)


class MonthlyBalanceUpdate(BaseModel):
    """Omitted fields are left unchanged; `entries`, when given, replaces all entries."""

    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)
    gross_salary: Decimal | None = Field(default=None, ge=0)
    dollar_rate: Decimal | None = Field(default=None, gt=0)
    max_salary_last_six_months: Decimal | None = Field(default=None, ge=0)
    entries: list[BalanceEntryCreate] | None = None
