# portfolio_tracker/services/balances.py
"""
Monthly Balance Service - salary, income and expense sheets per owner.

Each sheet covers one (owner, year, month) and carries the dollar rate of
that month. Entries are amounts in local currency, in USD, or both; the
summary converts the USD part with the sheet's rate.

Summary:
    total_income   = income_local + income_usd x dollar_rate
    total_expenses = expenses_local + expenses_usd x dollar_rate
    net_balance    = gross_salary + total_income - total_expenses
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_tracker.models import BalanceEntry, BalanceEntryType, MonthlyBalance
from portfolio_tracker.schemas.balances import (
    BalanceEntryCreate,
    BalanceEntryUpdate,
    MonthlyBalanceCreate,
    MonthlyBalanceUpdate,
)
from portfolio_tracker.services.exceptions import (
    BalanceNotFoundError,
    ConflictError,
    ServiceError,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceSummary:
    income_local: Decimal
    income_usd: Decimal
    expenses_local: Decimal
    expenses_usd: Decimal
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    net_balance_usd: Decimal


class MonthlyBalanceService:
    """Monthly balance sheet service. Every lookup is scoped to the owner."""

    def create(self, db: Session, owner_id: str, payload: MonthlyBalanceCreate) -> MonthlyBalance:
        """
        Raises:
            ConflictError: The owner already has a sheet for that month
        """
        self._ensure_period_free(db, owner_id, payload.year, payload.month)

        balance = MonthlyBalance(
            owner_id=owner_id,
            year=payload.year,
            month=payload.month,
            gross_salary=payload.gross_salary,
            dollar_rate=payload.dollar_rate,
            max_salary_last_six_months=payload.max_salary_last_six_months,
            entries=[self._entry(e) for e in payload.entries],
        )
        db.add(balance)

        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConflictError(f"Balance for {payload.month}/{payload.year} already exists") from e

        db.refresh(balance)
        logger.info(f"Created monthly balance {balance.id} for {owner_id} ({payload.month}/{payload.year})")
        return balance

    def list(self, db: Session, owner_id: str) -> list[MonthlyBalance]:
        """Newest period first."""
        return list(db.scalars(
            select(MonthlyBalance)
            .where(MonthlyBalance.owner_id == owner_id)
            .order_by(MonthlyBalance.year.desc(), MonthlyBalance.month.desc())
        ))

    def get(self, db: Session, owner_id: str, balance_id: int) -> MonthlyBalance:
        balance = db.scalar(
            select(MonthlyBalance)
            .where(MonthlyBalance.id == balance_id)
            .where(MonthlyBalance.owner_id == owner_id)
        )
        if balance is None:
            raise BalanceNotFoundError(str(balance_id))
        return balance

    def get_by_period(self, db: Session, owner_id: str, year: int, month: int) -> MonthlyBalance:
        balance = self._find_by_period(db, owner_id, year, month)
        if balance is None:
            raise BalanceNotFoundError(f"{month}/{year}")
        return balance

    def update(self, db: Session, owner_id: str, balance_id: int, payload: MonthlyBalanceUpdate) -> MonthlyBalance:
        """
        Update the given fields. A given `entries` list replaces all entries.

        Raises:
            BalanceNotFoundError: Unknown sheet
            ConflictError: Moving the sheet onto a period already taken
        """
        balance = self.get(db, owner_id, balance_id)
        changes = payload.model_dump(exclude_unset=True, exclude={"entries"})

        year = changes.get("year") or balance.year
        month = changes.get("month") or balance.month
        if (year, month) != (balance.year, balance.month):
            self._ensure_period_free(db, owner_id, year, month)

        for name, value in changes.items():
            if value is not None or name == "max_salary_last_six_months":
                setattr(balance, name, value)

        if payload.entries is not None:
            balance.entries = [self._entry(e) for e in payload.entries]

        self._commit(db, f"update monthly balance {balance_id}")
        db.refresh(balance)
        return balance

    def delete(self, db: Session, owner_id: str, balance_id: int) -> None:
        balance = self.get(db, owner_id, balance_id)
        db.delete(balance)
        self._commit(db, f"delete monthly balance {balance_id}")
        logger.info(f"Deleted monthly balance {balance_id} for {owner_id}")

    # =========================================================================
    # ENTRIES
    # =========================================================================

    def update_entry(self, db: Session, owner_id: str, entry_id: int, payload: BalanceEntryUpdate) -> BalanceEntry:
        entry = self._get_entry(db, owner_id, entry_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            setattr(entry, name, value)
        self._commit(db, f"update balance entry {entry_id}")
        db.refresh(entry)
        return entry

    def delete_entry(self, db: Session, owner_id: str, entry_id: int) -> None:
        entry = self._get_entry(db, owner_id, entry_id)
        db.delete(entry)
        self._commit(db, f"delete balance entry {entry_id}")

    # =========================================================================
    # SUMMARY & BULK
    # =========================================================================

    def summary(self, db: Session, owner_id: str, balance_id: int) -> BalanceSummary:
        balance = self.get(db, owner_id, balance_id)

        income = [e for e in balance.entries if e.entry_type == BalanceEntryType.INCOME]
        expenses = [e for e in balance.entries if e.entry_type == BalanceEntryType.EXPENSE]

        income_local = sum((e.amount_local or ZERO for e in income), ZERO)
        income_usd = sum((e.amount_usd or ZERO for e in income), ZERO)
        expenses_local = sum((e.amount_local or ZERO for e in expenses), ZERO)
        expenses_usd = sum((e.amount_usd or ZERO for e in expenses), ZERO)

        rate = balance.dollar_rate
        total_income = income_local + income_usd * rate
        total_expenses = expenses_local + expenses_usd * rate
        net = balance.gross_salary + total_income - total_expenses

        return BalanceSummary(
            income_local=income_local,
            income_usd=income_usd,
            expenses_local=expenses_local,
            expenses_usd=expenses_usd,
            total_income=total_income,
            total_expenses=total_expenses,
            net_balance=net,
            net_balance_usd=net / rate if rate else ZERO,
        )

    def bulk_create(self, db: Session, owner_id: str, payloads: list[MonthlyBalanceCreate]) -> list[MonthlyBalance]:
        """Create each sheet independently; failures are logged and skipped."""
        created = []
        for payload in payloads:
            try:
                created.append(self.create(db, owner_id, payload))
            except ServiceError as e:
                logger.warning(f"Skipping balance {payload.month}/{payload.year} for {owner_id}: {e}")
        logger.info(f"Bulk created {len(created)}/{len(payloads)} monthly balances for {owner_id}")
        return created

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _entry(data: BalanceEntryCreate) -> BalanceEntry:
        return BalanceEntry(**data.model_dump())

    @staticmethod
    def _find_by_period(db: Session, owner_id: str, year: int, month: int) -> MonthlyBalance | None:
        return db.scalar(
            select(MonthlyBalance)
            .where(MonthlyBalance.owner_id == owner_id)
            .where(MonthlyBalance.year == year)
            .where(MonthlyBalance.month == month)
        )

    def _ensure_period_free(self, db: Session, owner_id: str, year: int, month: int) -> None:
        if self._find_by_period(db, owner_id, year, month) is not None:
            raise ConflictError(f"Balance for {month}/{year} already exists")

    @staticmethod
    def _get_entry(db: Session, owner_id: str, entry_id: int) -> BalanceEntry:
        entry = db.scalar(
            select(BalanceEntry)
            .join(MonthlyBalance, BalanceEntry.balance_id == MonthlyBalance.id)
            .where(BalanceEntry.id == entry_id)
            .where(MonthlyBalance.owner_id == owner_id)
        )
        if entry is None:
            raise BalanceNotFoundError(f"entry {entry_id}")
        return entry

    @staticmethod
    def _commit(db: Session, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to {action}: {e}", exc_info=True)
            raise
