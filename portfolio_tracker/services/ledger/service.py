# portfolio_tracker/services/ledger/service.py
"""
Position Ledger - portfolios, positions and their operation history.

This service handles:
- Portfolio CRUD
- Buys and sells at weighted-average cost
- Capital contributions and withdrawals
- The append-only operation log

Design Principles:
- No HTTP Knowledge: Raises domain exceptions, not HTTPException
- Receives database sessions as parameters
- Atomic: every mutation touches position, portfolio and operation log in
  a single commit, rolled back on any error
- Validate before mutating: a rejected sell leaves no trace

Usage:
    ledger = PositionLedger()
    portfolio = ledger.create_portfolio(db, PortfolioCreate(name="Main", initial_capital=1000))
    ledger.buy(db, portfolio.id, BuyRequest(symbol="BTC", name="Bitcoin",
                                            asset_class=AssetClass.CRYPTO,
                                            quantity=1, price_usd=100))
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_tracker.models import AssetClass, Operation, OperationType, Portfolio, Position
from portfolio_tracker.schemas.ledger import (
    BuyRequest,
    PortfolioCreate,
    PortfolioUpdate,
    SellRequest,
)
from portfolio_tracker.services.exceptions import (
    InsufficientQuantityError,
    PortfolioNotFoundError,
    PositionNotFoundError,
    ValidationError,
)
from portfolio_tracker.services.ledger.costing import ZERO, apply_buy, apply_sell

logger = logging.getLogger(__name__)

DEFAULT_OPERATIONS_LIMIT = 100


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class SellResult:
    """Outcome of a sell."""

    symbol: str
    quantity_sold: Decimal
    remaining_quantity: Decimal
    price_usd: Decimal
    cost_basis_sold: Decimal
    realized_gain: Decimal
    realized_gain_pct: Decimal
    position_closed: bool
    operation: Operation


# =============================================================================
# SERVICE
# =============================================================================

class PositionLedger:
    """Portfolio ledger service."""

    def __init__(self) -> None:
        logger.info("PositionLedger initialized")

    # =========================================================================
    # PORTFOLIOS
    # =========================================================================

    def create_portfolio(self, db: Session, data: PortfolioCreate) -> Portfolio:
        portfolio = Portfolio(
            name=data.name,
            description=data.description,
            initial_capital=data.initial_capital,
            realized_gains=ZERO,
        )
        db.add(portfolio)
        self._commit(db, f"create portfolio '{data.name}'")
        db.refresh(portfolio)
        logger.info(f"Created portfolio {portfolio.id} '{portfolio.name}'")
        return portfolio

    def list_portfolios(self, db: Session) -> list[Portfolio]:
        return list(db.scalars(select(Portfolio).order_by(Portfolio.id)))

    def get_portfolio(self, db: Session, portfolio_id: int) -> Portfolio:
        """
        Raises:
            PortfolioNotFoundError: If the portfolio does not exist
        """
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    def update_portfolio(self, db: Session, portfolio_id: int, data: PortfolioUpdate) -> Portfolio:
        portfolio = self.get_portfolio(db, portfolio_id)

        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            portfolio.name = changes["name"].strip()
        if "description" in changes:
            portfolio.description = changes["description"]

        self._commit(db, f"update portfolio {portfolio_id}")
        db.refresh(portfolio)
        return portfolio

    def delete_portfolio(self, db: Session, portfolio_id: int) -> None:
        """Delete a portfolio with its positions, operations and snapshots."""
        portfolio = self.get_portfolio(db, portfolio_id)
        db.delete(portfolio)
        self._commit(db, f"delete portfolio {portfolio_id}")
        logger.info(f"Deleted portfolio {portfolio_id}")

    # =========================================================================
    # POSITIONS
    # =========================================================================

    def list_positions(self, db: Session, portfolio_id: int) -> list[Position]:
        self.get_portfolio(db, portfolio_id)
        return list(db.scalars(
            select(Position)
            .where(Position.portfolio_id == portfolio_id)
            .order_by(Position.id)
        ))

    def get_position(self, db: Session, position_id: int) -> Position:
        position = db.get(Position, position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        return position

    def find_position(self, db: Session, portfolio_id: int, symbol: str) -> Position | None:
        return db.scalar(
            select(Position)
            .where(Position.portfolio_id == portfolio_id)
            .where(Position.symbol == symbol.upper())
        )

    def delete_position(self, db: Session, position_id: int) -> None:
        """Remove a position outright. Its operations stay, detached from it."""
        position = self.get_position(db, position_id)
        self._detach_operations(db, position.id)
        db.delete(position)
        self._commit(db, f"delete position {position_id}")
        logger.info(f"Deleted position {position_id} ({position.symbol})")

    # =========================================================================
    # TRADES
    # =========================================================================

    def buy(self, db: Session, portfolio_id: int, data: BuyRequest) -> Position:
        """
        Buy `data.quantity` units, creating or averaging into the position.

        Raises:
            PortfolioNotFoundError: Unknown portfolio
            ValidationError: Existing position has a different asset class
        """
        self.get_portfolio(db, portfolio_id)
        price_usd = data.effective_price_usd

        position = self.find_position(db, portfolio_id, data.symbol)
        if position is None:
            position = Position(
                portfolio_id=portfolio_id,
                name=data.name,
                symbol=data.symbol,
                asset_class=data.asset_class,
                quantity=data.quantity,
                avg_cost_usd=price_usd,
                avg_cost_local=data.price_local,
                avg_fx_rate=data.fx_rate,
            )
            db.add(position)
            db.flush()
        else:
            if position.asset_class != data.asset_class:
                raise ValidationError(
                    f"{data.symbol} is held as {position.asset_class.value}, "
                    f"cannot buy it as {data.asset_class.value}",
                    field="asset_class",
                )
            outcome = apply_buy(
                old_qty=position.quantity,
                old_avg_usd=position.avg_cost_usd,
                old_avg_local=position.avg_cost_local,
                old_avg_fx=position.avg_fx_rate,
                qty=data.quantity,
                price_usd=price_usd,
                price_local=data.price_local,
                fx_rate=data.fx_rate,
            )
            position.quantity = outcome.quantity
            position.avg_cost_usd = outcome.avg_cost_usd
            position.avg_cost_local = outcome.avg_cost_local
            position.avg_fx_rate = outcome.avg_fx_rate

        db.add(Operation(
            portfolio_id=portfolio_id,
            position_id=position.id,
            operation_type=OperationType.BUY,
            symbol=data.symbol,
            asset_name=position.name,
            asset_class=position.asset_class,
            quantity=data.quantity,
            price_usd=price_usd,
            price_local=data.price_local,
            fx_rate=data.fx_rate,
            amount_usd=data.quantity * price_usd,
            note=data.note,
        ))

        self._commit(db, f"buy {data.quantity} {data.symbol}")
        db.refresh(position)
        logger.info(
            f"Portfolio {portfolio_id}: bought {data.quantity} {data.symbol} @ {price_usd} USD, "
            f"holding {position.quantity} @ avg {position.avg_cost_usd}"
        )
        return position

    def sell(self, db: Session, portfolio_id: int, data: SellRequest) -> SellResult:
        """
        Sell units, realizing gain against the average cost.

        Listed equities and funds may be sold at a local price plus FX rate;
        the USD price is derived and both are kept on the operation.

        The position is deleted when what remains is within the closing
        tolerance; its operations keep their history.

        Raises:
            PortfolioNotFoundError: Unknown portfolio
            PositionNotFoundError: Symbol not held
            InsufficientQuantityError: Selling more than held (nothing changes)
            ValidationError: Crypto sold without a USD price
        """
        portfolio = self.get_portfolio(db, portfolio_id)
        position = self.find_position(db, portfolio_id, data.symbol)
        if position is None:
            raise PositionNotFoundError(data.symbol, portfolio_id=portfolio_id)

        if data.quantity > position.quantity:
            raise InsufficientQuantityError(data.symbol, data.quantity, position.quantity)
        if position.asset_class == AssetClass.CRYPTO and data.price_usd is None:
            raise ValidationError("Crypto sales require price_usd", field="price_usd")

        price_usd = data.effective_price_usd
        outcome = apply_sell(position.quantity, position.avg_cost_usd, data.quantity, price_usd)

        operation = Operation(
            portfolio_id=portfolio_id,
            position_id=position.id,
            operation_type=OperationType.SELL,
            symbol=data.symbol,
            asset_name=position.name,
            asset_class=position.asset_class,
            quantity=data.quantity,
            price_usd=price_usd,
            price_local=data.price_local,
            fx_rate=data.fx_rate,
            amount_usd=outcome.proceeds,
            cost_basis_sold=outcome.cost_basis_sold,
            realized_gain=outcome.realized_gain,
            note=data.note,
        )
        db.add(operation)
        self._adjust_totals(db, portfolio, realized_gains=outcome.realized_gain)

        if outcome.closes_position:
            db.flush()
            self._detach_operations(db, position.id)
            db.delete(position)
        else:
            position.quantity = outcome.remaining_quantity

        self._commit(db, f"sell {data.quantity} {data.symbol}")
        db.refresh(operation)
        logger.info(
            f"Portfolio {portfolio_id}: sold {data.quantity} {data.symbol} @ {price_usd} USD, "
            f"realized {outcome.realized_gain}"
            + (" (position closed)" if outcome.closes_position else "")
        )

        return SellResult(
            symbol=data.symbol,
            quantity_sold=data.quantity,
            remaining_quantity=ZERO if outcome.closes_position else outcome.remaining_quantity,
            price_usd=price_usd,
            cost_basis_sold=outcome.cost_basis_sold,
            realized_gain=outcome.realized_gain,
            realized_gain_pct=outcome.realized_gain_pct,
            position_closed=outcome.closes_position,
            operation=operation,
        )

    # =========================================================================
    # CAPITAL
    # =========================================================================

    def contribute(self, db: Session, portfolio_id: int, amount: Decimal, note: str | None = None) -> Operation:
        if amount <= ZERO:
            raise ValidationError("Contribution must be positive", field="amount")

        portfolio = self.get_portfolio(db, portfolio_id)
        self._adjust_totals(db, portfolio, initial_capital=amount)
        operation = Operation(
            portfolio_id=portfolio_id,
            operation_type=OperationType.CONTRIBUTION,
            amount_usd=amount,
            note=note,
        )
        db.add(operation)

        self._commit(db, f"contribute {amount} to portfolio {portfolio_id}")
        db.refresh(operation)
        logger.info(f"Portfolio {portfolio_id}: contributed {amount} USD")
        return operation

    def withdraw(self, db: Session, portfolio_id: int, amount: Decimal, note: str | None = None) -> Operation:
        """
        Raises:
            ValidationError: Non-positive amount or more than the capital
        """
        if amount <= ZERO:
            raise ValidationError("Withdrawal must be positive", field="amount")

        portfolio = self.get_portfolio(db, portfolio_id)
        # The capital check is part of the UPDATE so a concurrent withdrawal cannot overdraw
        result = db.execute(
            update(Portfolio)
            .where(Portfolio.id == portfolio_id, Portfolio.initial_capital >= amount)
            .values(initial_capital=Portfolio.initial_capital - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            raise ValidationError(
                f"Cannot withdraw {amount} USD: capital is {portfolio.initial_capital} USD",
                field="amount",
            )
        db.expire(portfolio, ["initial_capital"])

        operation = Operation(
            portfolio_id=portfolio_id,
            operation_type=OperationType.WITHDRAWAL,
            amount_usd=amount,
            note=note,
        )
        db.add(operation)

        self._commit(db, f"withdraw {amount} from portfolio {portfolio_id}")
        db.refresh(operation)
        logger.info(f"Portfolio {portfolio_id}: withdrew {amount} USD")
        return operation

    def list_operations(
            self,
            db: Session,
            portfolio_id: int,
            limit: int = DEFAULT_OPERATIONS_LIMIT,
    ) -> list[Operation]:
        """Operations, newest first."""
        self.get_portfolio(db, portfolio_id)
        return list(db.scalars(
            select(Operation)
            .where(Operation.portfolio_id == portfolio_id)
            .order_by(Operation.executed_at.desc(), Operation.id.desc())
            .limit(limit)
        ))

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _adjust_totals(db: Session, portfolio: Portfolio, **deltas: Decimal) -> None:
        """Add `deltas` to portfolio columns in SQL, so concurrent writers do not lose updates."""
        db.execute(
            update(Portfolio)
            .where(Portfolio.id == portfolio.id)
            .values({name: getattr(Portfolio, name) + delta for name, delta in deltas.items()})
            .execution_options(synchronize_session=False)
        )
        db.expire(portfolio, list(deltas))

    @staticmethod
    def _detach_operations(db: Session, position_id: int) -> None:
        # SQLite does not enforce ON DELETE SET NULL without the FK pragma
        db.execute(
            update(Operation)
            .where(Operation.position_id == position_id)
            .values(position_id=None)
        )

    @staticmethod
    def _commit(db: Session, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to {action}: {e}", exc_info=True)
            raise
