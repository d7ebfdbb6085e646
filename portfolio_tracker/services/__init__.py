# portfolio_tracker/services/__init__.py
"""
Service layer.

Services:
- Have NO knowledge of transport (no status codes)
- Raise domain-specific exceptions from services.exceptions
- Receive database sessions as parameters
- Receive their upstream collaborators through the constructor

Usage:
    from portfolio_tracker.services import PositionLedger, ValuationEngine, SnapshotStore
    from portfolio_tracker.services import PortfolioNotFoundError, UpstreamError

Architecture:
    services/
    ├── __init__.py          # This file - main exports
    ├── exceptions.py        # Domain exceptions
    ├── protocols.py         # Source interfaces (Protocol classes)
    ├── circuit_breaker.py   # Circuit breaker for external APIs
    ├── balances.py          # Monthly balance sheets
    ├── snapshots.py         # Daily valuation snapshots
    ├── ledger/              # Positions, operations, weighted-average cost
    ├── valuation/           # Valuation engine and calculators
    └── upstream/            # Provider clients
"""

from portfolio_tracker.services.balances import BalanceSummary, MonthlyBalanceService
from portfolio_tracker.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
)
from portfolio_tracker.services.exceptions import (
    AuthenticationError,
    BalanceNotFoundError,
    ConfigurationError,
    ConflictError,
    InsufficientQuantityError,
    NotFoundError,
    PortfolioNotFoundError,
    PositionNotFoundError,
    ProviderUnavailableError,
    RateLimitError,
    ServiceError,
    SnapshotExistsError,
    UpstreamError,
    UpstreamResponseError,
    ValidationError,
)
from portfolio_tracker.services.ledger import PositionLedger, SellResult
from portfolio_tracker.services.snapshots import SnapshotStore
from portfolio_tracker.services.valuation import PortfolioValuation, ValuationEngine

__all__ = [
    # Services
    "MonthlyBalanceService",
    "BalanceSummary",
    "PositionLedger",
    "SellResult",
    "SnapshotStore",
    "ValuationEngine",
    "PortfolioValuation",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    # Exceptions
    "ServiceError",
    "ConfigurationError",
    "AuthenticationError",
    "ValidationError",
    "InsufficientQuantityError",
    "ConflictError",
    "SnapshotExistsError",
    "NotFoundError",
    "PortfolioNotFoundError",
    "PositionNotFoundError",
    "BalanceNotFoundError",
    "UpstreamError",
    "ProviderUnavailableError",
    "RateLimitError",
    "UpstreamResponseError",
]
