# portfolio_tracker/services/snapshots.py
"""
Snapshot Store - one persisted valuation per portfolio per day.

The day is the server-local calendar date. Uniqueness is checked before
valuating (so a duplicate costs no upstream calls) and enforced again by
the (portfolio_id, snapshot_date) unique constraint for concurrent writers.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portfolio_tracker.models import Portfolio, Snapshot
from portfolio_tracker.services.exceptions import (
    PortfolioNotFoundError,
    ServiceError,
    SnapshotExistsError,
    ValidationError,
)
from portfolio_tracker.services.protocols import ValuationEngineProtocol
from portfolio_tracker.services.valuation.types import CENT, PortfolioValuation
from portfolio_tracker.utils.context import correlation_scope

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 30
DEFAULT_HISTORY_LIMIT = 365

SnapshotOrder = Literal["asc", "desc"]


@dataclass(frozen=True)
class ValuePoint:
    snapshot_date: date
    current_value: Decimal


@dataclass
class DailySnapshotReport:
    created: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class SnapshotStore:
    """
    Persists and reads daily snapshots.

    Args:
        engine: Produces the valuation to persist
        today: Returns the server-local date; replaced in tests
    """

    def __init__(
            self,
            engine: ValuationEngineProtocol,
            today: Callable[[], date] = date.today,
    ) -> None:
        self._engine = engine
        self._today = today

    def create_snapshot(self, db: Session, portfolio_id: int) -> Snapshot:
        """
        Valuate `portfolio_id` now and persist it under today's date.

        Raises:
            PortfolioNotFoundError: Unknown portfolio
            SnapshotExistsError: A snapshot for today already exists
        """
        if db.get(Portfolio, portfolio_id) is None:
            raise PortfolioNotFoundError(portfolio_id)

        snapshot_date = self._today()
        if self._exists(db, portfolio_id, snapshot_date):
            raise SnapshotExistsError(portfolio_id, snapshot_date)

        valuation = self._engine.valuate(db, portfolio_id)
        snapshot = self._from_valuation(valuation, snapshot_date)
        db.add(snapshot)

        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Concurrent snapshot for portfolio {portfolio_id} on {snapshot_date}: {e}")
            raise SnapshotExistsError(portfolio_id, snapshot_date) from e

        db.refresh(snapshot)
        logger.info(
            f"Snapshot {snapshot.id} for portfolio {portfolio_id} on {snapshot_date}: "
            f"value {snapshot.current_value} USD"
            + (" (partial)" if valuation.partial else "")
        )
        return snapshot

    def list_snapshots(
            self,
            db: Session,
            portfolio_id: int,
            limit: int = DEFAULT_LIST_LIMIT,
            order: SnapshotOrder = "desc",
    ) -> list[Snapshot]:
        """
        Most recent `limit` snapshots, returned in `order` by date.

        Raises:
            ValidationError: order is not "asc" or "desc"
        """
        if order not in ("asc", "desc"):
            raise ValidationError(f"Invalid order '{order}', use 'asc' or 'desc'", field="order")
        if db.get(Portfolio, portfolio_id) is None:
            raise PortfolioNotFoundError(portfolio_id)

        recent = list(db.scalars(
            select(Snapshot)
            .where(Snapshot.portfolio_id == portfolio_id)
            .order_by(Snapshot.snapshot_date.desc())
            .limit(limit)
        ))
        if order == "asc":
            recent.reverse()
        return recent

    def get_value_history(
            self,
            db: Session,
            portfolio_id: int,
            limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[ValuePoint]:
        """(date, value) points, oldest first, for charting."""
        return [
            ValuePoint(snapshot_date=s.snapshot_date, current_value=s.current_value)
            for s in self.list_snapshots(db, portfolio_id, limit=limit, order="asc")
        ]

    def create_daily_snapshots(self, db: Session) -> DailySnapshotReport:
        """
        Snapshot every portfolio that has none for today.

        One portfolio failing does not stop the others.
        """
        report = DailySnapshotReport()
        snapshot_date = self._today()
        portfolio_ids = list(db.scalars(select(Portfolio.id).order_by(Portfolio.id)))
        logger.info(f"Daily snapshots for {snapshot_date}: {len(portfolio_ids)} portfolios")

        for portfolio_id in portfolio_ids:
            with correlation_scope():
                if self._exists(db, portfolio_id, snapshot_date):
                    logger.info(f"Portfolio {portfolio_id} already has today's snapshot, skipping")
                    report.skipped.append(portfolio_id)
                    continue
                try:
                    self.create_snapshot(db, portfolio_id)
                    report.created.append(portfolio_id)
                except SnapshotExistsError:
                    report.skipped.append(portfolio_id)
                except ServiceError as e:
                    logger.error(f"Snapshot failed for portfolio {portfolio_id}: {e}")
                    report.failed[portfolio_id] = str(e)

        logger.info(
            f"Daily snapshots done: {len(report.created)} created, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    @staticmethod
    def _exists(db: Session, portfolio_id: int, snapshot_date: date) -> bool:
        return db.scalar(
            select(Snapshot.id)
            .where(Snapshot.portfolio_id == portfolio_id)
            .where(Snapshot.snapshot_date == snapshot_date)
        ) is not None

    @staticmethod
    def _from_valuation(valuation: PortfolioValuation, snapshot_date: date) -> Snapshot:
        return Snapshot(
            portfolio_id=valuation.portfolio_id,
            snapshot_date=snapshot_date,
            initial_capital=valuation.initial_capital.quantize(CENT),
            realized_gains=valuation.realized_gains.quantize(CENT),
            current_value=valuation.current_value.quantize(CENT),
            unrealized_gains=valuation.unrealized_gains.quantize(CENT),
            total_invested=valuation.total_invested.quantize(CENT),
            total_gain=valuation.total_gain.quantize(CENT),
            total_gain_pct=valuation.total_gain_pct.quantize(Decimal("0.0001")),
            payload=valuation.to_dict(),
        )
