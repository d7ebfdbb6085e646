# portfolio_tracker/services/valuation/calculators.py
"""
Point-in-time valuation calculators.

Each calculator does one thing:
- PriceCalculator: Current USD price of a position from the gathered inputs
- PositionCalculator: Value, cost and gain of one position
- TotalsCalculator: Portfolio totals, composition and per-class breakdown

Calculators are stateless, receive everything explicitly and never round.

Usage:
    price_calc = PriceCalculator()
    price = price_calc.calculate(position, inputs)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from portfolio_tracker.models import AssetClass, Position
from portfolio_tracker.services.valuation.types import (
    ClassBreakdown,
    PositionValuation,
    PriceInputs,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part / whole x 100, or 0 when whole is 0."""
    if not whole:
        return ZERO
    return part / whole * HUNDRED


# =============================================================================
# PRICE CALCULATOR
# =============================================================================

@dataclass(frozen=True)
class PriceResult:
    price_usd: Decimal
    price_local: Decimal | None
    warning: str | None = None

    @property
    def priced(self) -> bool:
        return self.warning is None


class PriceCalculator:
    """
    Resolves the USD price of one position.

    Crypto:           price_usd = crypto_usd[symbol]
    Equities / funds: price_usd = listing_local[symbol] / fx_rate

    A missing price or FX rate yields price 0 and a warning.
    """

    def calculate(self, position: Position, inputs: PriceInputs) -> PriceResult:
        symbol = position.symbol.upper()

        if position.asset_class == AssetClass.CRYPTO:
            price = inputs.crypto_usd.get(symbol)
            if price is None:
                return PriceResult(ZERO, None, f"No USD price for {symbol}")
            return PriceResult(price, None)

        local = inputs.listing_local.get(symbol)
        if local is None:
            return PriceResult(ZERO, None, f"No listing price for {symbol}")
        if not inputs.fx_rate:
            return PriceResult(ZERO, local, f"No FX rate to convert {symbol} to USD")
        return PriceResult(local / inputs.fx_rate, local)


# =============================================================================
# POSITION CALCULATOR
# =============================================================================

class PositionCalculator:
    """
    Value and gain of one position.

    value = quantity x price
    cost = quantity x avg_cost_usd
    gain = value - cost
    gain% = gain / cost x 100 (0 if cost is 0)
    """

    def calculate(self, position: Position, price: PriceResult) -> PositionValuation:
        quantity = position.quantity
        avg_cost = position.avg_cost_usd or ZERO

        value = quantity * price.price_usd
        cost = quantity * avg_cost
        gain = value - cost

        return PositionValuation(
            position_id=position.id,
            symbol=position.symbol,
            name=position.name,
            asset_class=position.asset_class,
            quantity=quantity,
            avg_cost_usd=avg_cost,
            price_usd=price.price_usd,
            price_local=price.price_local,
            value_usd=value,
            cost_usd=cost,
            gain_usd=gain,
            gain_pct=percentage(gain, cost),
            priced=price.priced,
        )


# =============================================================================
# TOTALS CALCULATOR
# =============================================================================

@dataclass(frozen=True)
class Totals:
    current_value: Decimal
    total_cost: Decimal
    unrealized_gains: Decimal
    total_invested: Decimal
    total_gain: Decimal
    total_gain_pct: Decimal


class TotalsCalculator:
    """
    Portfolio-level totals.

    unrealized = value - cost
    total_invested = capital + realized
    total_gain = realized + unrealized
    total_gain% = total_gain / capital x 100 (0 without capital)
    """

    def calculate(
            self,
            positions: list[PositionValuation],
            initial_capital: Decimal,
            realized_gains: Decimal,
    ) -> Totals:
        value = sum((p.value_usd for p in positions), ZERO)
        cost = sum((p.cost_usd for p in positions), ZERO)
        unrealized = value - cost
        total_gain = realized_gains + unrealized

        return Totals(
            current_value=value,
            total_cost=cost,
            unrealized_gains=unrealized,
            total_invested=initial_capital + realized_gains,
            total_gain=total_gain,
            total_gain_pct=percentage(total_gain, initial_capital),
        )

    def apply_composition(self, positions: list[PositionValuation], total_value: Decimal) -> None:
        """Set composition_pct on each position (mutates)."""
        for position in positions:
            position.composition_pct = percentage(position.value_usd, total_value)

    def breakdown(self, positions: list[PositionValuation], total_value: Decimal) -> list[ClassBreakdown]:
        """Per-class totals in AssetClass order; classes without positions are omitted."""
        by_class: dict[AssetClass, ClassBreakdown] = {}
        for position in positions:
            row = by_class.setdefault(position.asset_class, ClassBreakdown(asset_class=position.asset_class))
            row.value_usd += position.value_usd
            row.cost_usd += position.cost_usd
            row.position_count += 1

        rows = []
        for asset_class in AssetClass:
            row = by_class.get(asset_class)
            if row is None:
                continue
            row.gain_usd = row.value_usd - row.cost_usd
            row.gain_pct = percentage(row.gain_usd, row.cost_usd)
            row.share_pct = percentage(row.value_usd, total_value)
            rows.append(row)
        return rows
