# portfolio_tracker/schemas/__init__.py
"""
Pydantic schemas.

- upstream: provider response contracts, parsed at the HTTP boundary
- ledger: portfolio, trade and capital input
- balances: monthly balance sheet input
"""

from portfolio_tracker.schemas.ledger import (
    PortfolioCreate,
    PortfolioUpdate,
    BuyRequest,
    SellRequest,
    CapitalMovement,
)
from portfolio_tracker.schemas.balances import (
    BalanceEntryCreate,
    BalanceEntryUpdate,
    MonthlyBalanceCreate,
    MonthlyBalanceUpdate,
)

__all__ = [
    "PortfolioCreate",
    "PortfolioUpdate",
    "BuyRequest",
    "SellRequest",
    "CapitalMovement",
    "BalanceEntryCreate",
    "BalanceEntryUpdate",
    "MonthlyBalanceCreate",
    "MonthlyBalanceUpdate",
]
