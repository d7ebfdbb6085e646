# portfolio_tracker/services/ledger/__init__.py
"""Portfolio ledger: positions at weighted-average cost and the operation log."""

from portfolio_tracker.services.ledger.costing import POSITION_TOLERANCE
from portfolio_tracker.services.ledger.service import PositionLedger, SellResult

__all__ = [
    "PositionLedger",
    "SellResult",
    "POSITION_TOLERANCE",
]
