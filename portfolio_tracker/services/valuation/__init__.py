# portfolio_tracker/services/valuation/__init__.py
"""
Portfolio valuation.

Usage:
    from portfolio_tracker.services.valuation import ValuationEngine

    engine = ValuationEngine(crypto_prices=..., listing_prices=..., fx_rates=...)
    result = engine.valuate(db, portfolio_id=1)
"""

from portfolio_tracker.services.valuation.engine import ValuationEngine
from portfolio_tracker.services.valuation.types import (
    ClassBreakdown,
    PortfolioValuation,
    PositionValuation,
    PriceInputs,
)

__all__ = [
    "ValuationEngine",
    "ClassBreakdown",
    "PortfolioValuation",
    "PositionValuation",
    "PriceInputs",
]
