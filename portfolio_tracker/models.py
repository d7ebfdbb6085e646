# portfolio_tracker/models.py
import enum
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Text, Date, DateTime, ForeignKey, Enum, Numeric, UniqueConstraint, JSON, Integer, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class AssetClass(str, enum.Enum):
    CRYPTO = "CRYPTO"
    LISTED_EQUITY = "LISTED_EQUITY"  # CEDEARs and local shares, priced by the brokerage
    FUND = "FUND"  # Mutual fund units, priced by the brokerage


class OperationType(str, enum.Enum):
    CONTRIBUTION = "CONTRIBUTION"
    WITHDRAWAL = "WITHDRAWAL"
    BUY = "BUY"
    SELL = "SELL"


class BalanceEntryType(str, enum.Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class Portfolio(Base):
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # USD amounts. Capital moves with contributions/withdrawals, realized gains with sells.
    initial_capital: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    realized_gains: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    positions: Mapped[list["Position"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan",
        order_by="Position.id",
    )
    operations: Mapped[list["Operation"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan",
    )
    snapshots: Mapped[list["Snapshot"]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan",
    )


class Position(Base):
    """
    Quantity of one symbol held in one portfolio, at weighted-average cost.

    The symbol is the short prefix used by the upstream sources ("BTC",
    "AAPL", "GGAL"), stored upper-case. Local-currency cost and the average
    FX rate are only known for positions bought with local prices.
    """
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", name="uq_position_portfolio_symbol"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), index=True)

    name: Mapped[str] = mapped_column(String(120))
    symbol: Mapped[str] = mapped_column(String(20), index=True)
    asset_class: Mapped[AssetClass] = mapped_column(Enum(AssetClass))

    quantity: Mapped[Decimal] = mapped_column(Numeric(28, 10), default=Decimal("0"))
    avg_cost_usd: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    avg_cost_local: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    avg_fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    portfolio: Mapped["Portfolio"] = relationship(back_populates="positions")


class Operation(Base):
    """
    Append-only ledger entry.

    Capital movements leave quantity/price empty. Sells carry the cost basis
    of the units sold and the realized gain. Trades copy the symbol, name and
    asset class of the position, so history reads the same after the position
    is gone.

    Rows are never edited, with one exception: position_id is set to NULL when
    its position is deleted (the FK is ON DELETE SET NULL).
    """
    __tablename__ = "operations"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), index=True)
    position_id: Mapped[int | None] = mapped_column(
        ForeignKey("positions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    operation_type: Mapped[OperationType] = mapped_column(Enum(OperationType))
    symbol: Mapped[str | None] = mapped_column(String(20), nullable=True)
    asset_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    asset_class: Mapped[AssetClass | None] = mapped_column(Enum(AssetClass), nullable=True)

    quantity: Mapped[Decimal | None] = mapped_column(Numeric(28, 10), nullable=True)
    price_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    price_local: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 8))

    cost_basis_sold: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    realized_gain: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)

    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    portfolio: Mapped["Portfolio"] = relationship(back_populates="operations")


class Snapshot(Base):
    """Daily valuation summary. One row per portfolio per server-local date."""
    __tablename__ = "snapshots"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "snapshot_date", name="uq_snapshot_portfolio_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"), index=True)
    snapshot_date: Mapped[date] = mapped_column(Date, index=True)

    initial_capital: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    realized_gains: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    current_value: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    unrealized_gains: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    total_invested: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    total_gain: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    total_gain_pct: Mapped[Decimal] = mapped_column(Numeric(12, 4))

    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    portfolio: Mapped["Portfolio"] = relationship(back_populates="snapshots")


class MonthlyBalance(Base):
    """Salary and expense sheet for one owner and one month."""
    __tablename__ = "monthly_balances"
    __table_args__ = (
        UniqueConstraint("owner_id", "year", "month", name="uq_balance_owner_period"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    year: Mapped[int] = mapped_column(Integer)
    month: Mapped[int] = mapped_column(Integer)  # 1-12

    gross_salary: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    dollar_rate: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    max_salary_last_six_months: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    entries: Mapped[list["BalanceEntry"]] = relationship(
        back_populates="balance",
        cascade="all, delete-orphan",
        order_by="BalanceEntry.id",
    )


class BalanceEntry(Base):
    __tablename__ = "balance_entries"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    balance_id: Mapped[int] = mapped_column(ForeignKey("monthly_balances.id", ondelete="CASCADE"), index=True)

    entry_type: Mapped[BalanceEntryType] = mapped_column(Enum(BalanceEntryType))
    concept: Mapped[str] = mapped_column(String(200))
    amount_local: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"))
    installment_current: Mapped[int | None] = mapped_column(Integer, nullable=True)
    installment_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    selected: Mapped[bool] = mapped_column(Boolean, default=False)

    balance: Mapped["MonthlyBalance"] = relationship(back_populates="entries")
