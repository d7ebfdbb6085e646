# portfolio_tracker/services/protocols.py
"""
Protocol interfaces for service dependency injection.

Using typing.Protocol enables structural subtyping:
- PriceResolver, BrokerageGateway and QuoteFetcher satisfy these without
  inheriting from them
- Test fakes work without touching HTTP
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from portfolio_tracker.services.valuation.types import PortfolioValuation


class CryptoPriceSource(Protocol):
    """USD prices for crypto symbols. Implemented by PriceResolver."""

    def get_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        ...


class ListingPriceSource(Protocol):
    """Local-currency prices for listed equities and funds. Implemented by BrokerageGateway."""

    def get_listing_prices(self, symbols: Iterable[str], country: str | None = None) -> dict[str, Decimal]:
        ...


class FXRateSource(Protocol):
    """Local currency per USD. Implemented by QuoteFetcher."""

    def get_usd_rate(self, kind: str = "ccl") -> Decimal:
        ...


class ValuationEngineProtocol(Protocol):
    """Interface required by SnapshotStore."""

    def valuate(self, db: Session, portfolio_id: int) -> PortfolioValuation:
        ...
