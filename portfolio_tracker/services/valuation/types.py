# portfolio_tracker/services/valuation/types.py
"""
Internal data types for the Valuation Engine.

Design Principles:
- Use Decimal for ALL financial values (never float)
- Values are kept unrounded; rounding to cents happens only in to_dict()
- Warnings accumulate for data quality tracking

Type Hierarchy:
    PriceInputs         - What the upstream fan-out returned
    PositionValuation   - Value, cost and gain of one position
    ClassBreakdown      - Totals for one asset class
    PortfolioValuation  - Complete portfolio valuation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from portfolio_tracker.models import AssetClass

CENT = Decimal("0.01")


def money(value: Decimal | None) -> float | None:
    """Round to cents for presentation."""
    if value is None:
        return None
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


# =============================================================================
# INPUTS
# =============================================================================

@dataclass
class PriceInputs:
    """
    Upstream data gathered for one valuation.

    Attributes:
        crypto_usd: {SYMBOL: USD price} for crypto positions
        listing_local: {SYMBOL: local-currency price} for equities and funds
        fx_rate: Local currency per USD, None when unavailable
        partial: True when any source failed
        warnings: Why data is missing
    """

    crypto_usd: dict[str, Decimal] = field(default_factory=dict)
    listing_local: dict[str, Decimal] = field(default_factory=dict)
    fx_rate: Decimal | None = None
    partial: bool = False
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class PositionValuation:
    """
    Valuation for one position.

    Attributes:
        price_usd: Current USD price, 0 when it could not be resolved
        price_local: Local listing price for equities/funds, if known
        value_usd: quantity x price_usd
        cost_usd: quantity x avg_cost_usd
        gain_usd: value - cost
        gain_pct: gain / cost x 100, 0 when cost is 0
        composition_pct: Share of the portfolio's total value
    """

    position_id: int
    symbol: str
    name: str
    asset_class: AssetClass
    quantity: Decimal
    avg_cost_usd: Decimal
    price_usd: Decimal
    price_local: Decimal | None
    value_usd: Decimal
    cost_usd: Decimal
    gain_usd: Decimal
    gain_pct: Decimal
    composition_pct: Decimal = Decimal("0")
    priced: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "name": self.name,
            "asset_class": self.asset_class.value,
            "quantity": float(self.quantity),
            "avg_cost_usd": money(self.avg_cost_usd),
            "price_usd": money(self.price_usd),
            "price_local": money(self.price_local),
            "value_usd": money(self.value_usd),
            "cost_usd": money(self.cost_usd),
            "gain_usd": money(self.gain_usd),
            "gain_pct": money(self.gain_pct),
            "composition_pct": money(self.composition_pct),
            "priced": self.priced,
        }


@dataclass
class ClassBreakdown:
    asset_class: AssetClass
    value_usd: Decimal = Decimal("0")
    cost_usd: Decimal = Decimal("0")
    gain_usd: Decimal = Decimal("0")
    gain_pct: Decimal = Decimal("0")
    share_pct: Decimal = Decimal("0")
    position_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_class": self.asset_class.value,
            "value_usd": money(self.value_usd),
            "cost_usd": money(self.cost_usd),
            "gain_usd": money(self.gain_usd),
            "gain_pct": money(self.gain_pct),
            "share_pct": money(self.share_pct),
            "position_count": self.position_count,
        }


@dataclass
class PortfolioValuation:
    """
    Complete valuation of one portfolio at one moment.

    Totals:
        total_invested = initial_capital + realized_gains
        total_gain = realized_gains + unrealized_gains
        total_gain_pct = total_gain / initial_capital x 100 (0 without capital)

    `partial` is True when an upstream source failed and some prices fell
    back to 0; `warnings` says which.
    """

    portfolio_id: int
    portfolio_name: str
    valued_at: datetime
    initial_capital: Decimal
    realized_gains: Decimal
    current_value: Decimal
    total_cost: Decimal
    unrealized_gains: Decimal
    total_invested: Decimal
    total_gain: Decimal
    total_gain_pct: Decimal
    positions: list[PositionValuation] = field(default_factory=list)
    breakdown: list[ClassBreakdown] = field(default_factory=list)
    fx_rate: Decimal | None = None
    partial: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def position_count(self) -> int:
        return len(self.positions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "portfolio_name": self.portfolio_name,
            "summary": {
                "initial_capital": money(self.initial_capital),
                "realized_gains": money(self.realized_gains),
                "current_value": money(self.current_value),
                "total_cost": money(self.total_cost),
                "unrealized_gains": money(self.unrealized_gains),
                "total_invested": money(self.total_invested),
                "total_gain": money(self.total_gain),
                "total_gain_pct": money(self.total_gain_pct),
            },
            "positions": [p.to_dict() for p in self.positions],
            "breakdown": [b.to_dict() for b in self.breakdown],
            "metadata": {
                "valued_at": self.valued_at.isoformat(),
                "position_count": self.position_count,
                "fx_rate": money(self.fx_rate),
                "partial": self.partial,
                "warnings": list(self.warnings),
            },
        }
