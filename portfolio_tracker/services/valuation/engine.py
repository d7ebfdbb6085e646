# portfolio_tracker/services/valuation/engine.py
"""
Valuation Engine - current USD valuation of a portfolio.

Flow:
    1. Load the portfolio and its positions
    2. Zero positions: totals from capital and realized gains, no upstream calls
    3. Fan out in a thread pool, one task per source actually needed:
       - crypto USD prices        (CryptoPriceSource, i.e. PriceResolver)
       - listing local prices     (ListingPriceSource, i.e. BrokerageGateway)
       - local-per-USD FX rate    (FXRateSource, i.e. QuoteFetcher)
    4. Join each future independently. A failed source contributes nothing,
       adds a warning and marks the valuation partial; the rest still count.
    5. Price, value and aggregate with the stateless calculators

Design Principles:
- Dependency Injection: sources injected via constructor, any may be None
  (treated as unavailable)
- No HTTP Knowledge: upstream failures are absorbed here, not-found
  errors propagate
- Decimal throughout, unrounded

Usage:
    engine = ValuationEngine(crypto_prices=resolver, listing_prices=gateway, fx_rates=quotes)
    valuation = engine.valuate(db, portfolio_id=1)
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import copy_context
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from portfolio_tracker.config import settings
from portfolio_tracker.models import AssetClass, Portfolio, Position
from portfolio_tracker.services.exceptions import PortfolioNotFoundError, ServiceError
from portfolio_tracker.services.valuation.calculators import (
    PositionCalculator,
    PriceCalculator,
    TotalsCalculator,
)
from portfolio_tracker.services.valuation.types import (
    PortfolioValuation,
    PositionValuation,
    PriceInputs,
)

if TYPE_CHECKING:
    from portfolio_tracker.services.protocols import (
        CryptoPriceSource,
        FXRateSource,
        ListingPriceSource,
    )

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

LISTED_CLASSES = frozenset({AssetClass.LISTED_EQUITY, AssetClass.FUND})


class ValuationEngine:
    """
    Computes PortfolioValuation objects.

    Args:
        crypto_prices: USD prices for crypto symbols
        listing_prices: Local prices for equities and funds
        fx_rates: Local currency per USD
        fx_quote: Which dollar quote converts listing prices
        max_workers: Fan-out pool size
        clock: Returns the valuation timestamp
    """

    def __init__(
            self,
            crypto_prices: CryptoPriceSource | None = None,
            listing_prices: ListingPriceSource | None = None,
            fx_rates: FXRateSource | None = None,
            fx_quote: str | None = None,
            max_workers: int | None = None,
            clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._crypto_prices = crypto_prices
        self._listing_prices = listing_prices
        self._fx_rates = fx_rates
        self._fx_quote = fx_quote or settings.valuation_fx_quote
        self._max_workers = max_workers or settings.valuation_max_workers
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._price_calc = PriceCalculator()
        self._position_calc = PositionCalculator()
        self._totals_calc = TotalsCalculator()

        logger.info("ValuationEngine initialized")

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def valuate(self, db: Session, portfolio_id: int) -> PortfolioValuation:
        """
        Value a portfolio at current prices.

        Raises:
            PortfolioNotFoundError: If the portfolio does not exist
        """
        portfolio = db.get(Portfolio, portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)

        positions = list(db.scalars(
            select(Position)
            .where(Position.portfolio_id == portfolio_id)
            .where(Position.quantity > 0)
            .order_by(Position.id)
        ))

        capital = portfolio.initial_capital or ZERO
        realized = portfolio.realized_gains or ZERO

        if not positions:
            logger.info(f"Portfolio {portfolio_id} has no positions, skipping price lookup")
            return self._build(portfolio, [], PriceInputs(), capital, realized)

        inputs = self._gather_inputs(positions)

        valuations: list[PositionValuation] = []
        for position in positions:
            price = self._price_calc.calculate(position, inputs)
            if not price.priced:
                inputs.warnings.append(price.warning)
                inputs.partial = True
            valuations.append(self._position_calc.calculate(position, price))

        result = self._build(portfolio, valuations, inputs, capital, realized)
        log = logger.warning if result.partial else logger.info
        log(
            f"Valued portfolio {portfolio_id}: {len(valuations)} positions, "
            f"value {result.current_value:.2f} USD"
            + (f", partial ({len(result.warnings)} warnings)" if result.partial else "")
        )
        return result

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _gather_inputs(self, positions: list[Position]) -> PriceInputs:
        crypto_symbols = sorted({p.symbol.upper() for p in positions if p.asset_class == AssetClass.CRYPTO})
        listed_symbols = sorted({p.symbol.upper() for p in positions if p.asset_class in LISTED_CLASSES})

        inputs = PriceInputs()
        tasks: dict[str, Callable[[], Any]] = {}

        if crypto_symbols:
            if self._crypto_prices is None:
                self._unavailable(inputs, "crypto prices", "no crypto price source configured")
            else:
                tasks["crypto prices"] = lambda: self._crypto_prices.get_prices(crypto_symbols)

        if listed_symbols:
            if self._listing_prices is None:
                self._unavailable(inputs, "listing prices", "no brokerage configured")
            else:
                tasks["listing prices"] = lambda: self._listing_prices.get_listing_prices(listed_symbols)
            if self._fx_rates is None:
                self._unavailable(inputs, "FX rate", "no FX source configured")
            else:
                tasks["FX rate"] = lambda: self._fx_rates.get_usd_rate(self._fx_quote)

        if not tasks:
            return inputs

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="valuation") as pool:
            # Each task runs in a copy of the caller context so log lines keep the correlation ID
            futures: dict[str, Future] = {
                name: pool.submit(copy_context().run, task) for name, task in tasks.items()
            }

            inputs.crypto_usd = self._join(futures.get("crypto prices"), "crypto prices", inputs) or {}
            inputs.listing_local = self._join(futures.get("listing prices"), "listing prices", inputs) or {}
            inputs.fx_rate = self._join(futures.get("FX rate"), "FX rate", inputs)

        return inputs

    @staticmethod
    def _join(future: Future | None, name: str, inputs: PriceInputs) -> Any:
        if future is None:
            return None
        try:
            return future.result()
        except ServiceError as e:
            ValuationEngine._unavailable(inputs, name, str(e))
            return None

    @staticmethod
    def _unavailable(inputs: PriceInputs, name: str, reason: str) -> None:
        logger.warning(f"Valuation source '{name}' unavailable: {reason}")
        inputs.warnings.append(f"{name} unavailable: {reason}")
        inputs.partial = True

    def _build(
            self,
            portfolio: Portfolio,
            valuations: list[PositionValuation],
            inputs: PriceInputs,
            capital: Decimal,
            realized: Decimal,
    ) -> PortfolioValuation:
        totals = self._totals_calc.calculate(valuations, capital, realized)
        self._totals_calc.apply_composition(valuations, totals.current_value)

        return PortfolioValuation(
            portfolio_id=portfolio.id,
            portfolio_name=portfolio.name,
            valued_at=self._clock(),
            initial_capital=capital,
            realized_gains=realized,
            current_value=totals.current_value,
            total_cost=totals.total_cost,
            unrealized_gains=totals.unrealized_gains,
            total_invested=totals.total_invested,
            total_gain=totals.total_gain,
            total_gain_pct=totals.total_gain_pct,
            positions=valuations,
            breakdown=self._totals_calc.breakdown(valuations, totals.current_value),
            fx_rate=inputs.fx_rate,
            partial=inputs.partial,
            warnings=inputs.warnings,
        )
