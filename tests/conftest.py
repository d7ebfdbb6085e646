# tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- Database session fixtures (in-memory SQLite)
- Fake price, listing and FX sources implementing the service protocols
- httpx.MockTransport helpers for provider clients
- Sample data factories
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import json
import threading
from decimal import Decimal
from typing import Any, Callable, Iterator

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portfolio_tracker.models import AssetClass, Base, Portfolio, Position
from portfolio_tracker.services.exceptions import ProviderUnavailableError


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db(db_engine) -> Iterator[Session]:
    """Create a database session for testing."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# FAKE SOURCES
# =============================================================================

class FakeCryptoPrices:
    """CryptoPriceSource returning configured USD prices."""

    def __init__(self, prices: dict[str, Decimal] | None = None, error: Exception | None = None):
        self.prices = dict(prices or {})
        self.error = error
        self.calls: list[list[str]] = []

    def get_prices(self, symbols) -> dict[str, Decimal]:
        wanted = [s.upper() for s in symbols]
        self.calls.append(wanted)
        if self.error is not None:
            raise self.error
        return {s: self.prices[s] for s in wanted if s in self.prices}


class FakeListingPrices:
    """ListingPriceSource returning configured local-currency prices."""

    def __init__(self, prices: dict[str, Decimal] | None = None, error: Exception | None = None):
        self.prices = dict(prices or {})
        self.error = error
        self.calls: list[list[str]] = []

    def get_listing_prices(self, symbols, country: str | None = None) -> dict[str, Decimal]:
        wanted = [s.upper() for s in symbols]
        self.calls.append(wanted)
        if self.error is not None:
            raise self.error
        return {s: self.prices[s] for s in wanted if s in self.prices}


class FakeFXRates:
    """FXRateSource returning one configured rate."""

    def __init__(self, rate: Decimal | None = Decimal("1000"), error: Exception | None = None):
        self.rate = rate
        self.error = error
        self.calls: list[str] = []

    def get_usd_rate(self, kind: str = "ccl") -> Decimal:
        self.calls.append(kind)
        if self.error is not None:
            raise self.error
        return self.rate


@pytest.fixture
def crypto_prices() -> FakeCryptoPrices:
    return FakeCryptoPrices()


@pytest.fixture
def listing_prices() -> FakeListingPrices:
    return FakeListingPrices()


@pytest.fixture
def fx_rates() -> FakeFXRates:
    return FakeFXRates()


def unavailable(provider: str = "fake") -> ProviderUnavailableError:
    return ProviderUnavailableError(provider, "connection refused")


# =============================================================================
# HTTP HELPERS
# =============================================================================

class RecordingTransport(httpx.MockTransport):
    """
    MockTransport that records requests.

    The handler receives each httpx.Request and returns an httpx.Response.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

        def _record(request: httpx.Request) -> httpx.Response:
            with self._lock:
                self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    @property
    def call_count(self) -> int:
        return len(self.requests)


def json_response(payload: Any, status_code: int = 200, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


def sequence_handler(*responses: httpx.Response | Exception) -> Callable[[httpx.Request], httpx.Response]:
    """Handler answering with `responses` in order, repeating the last one."""
    queue = list(responses)

    def _handler(request: httpx.Request) -> httpx.Response:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    return _handler


def corrupt_gzip_handler(request: httpx.Request) -> httpx.Response:
    """Answers 200 with a gzip Content-Encoding over a body that is not gzip."""
    return httpx.Response(200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(b"not gzip"))


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[httpx.Client, RecordingTransport]:
    transport = RecordingTransport(handler)
    return httpx.Client(transport=transport), transport


def no_retry_wait(client) -> None:
    """Zero the tenacity backoff of an UpstreamClient instance."""
    client.RETRY_MIN_WAIT = 0
    client.RETRY_MAX_WAIT = 0
    client.RETRY_MULTIPLIER = 0


# =============================================================================
# FACTORIES
# =============================================================================

def create_portfolio(
        db: Session,
        name: str = "Main",
        initial_capital: Decimal = Decimal("1000"),
        realized_gains: Decimal = Decimal("0"),
) -> Portfolio:
    portfolio = Portfolio(name=name, initial_capital=initial_capital, realized_gains=realized_gains)
    db.add(portfolio)
    db.commit()
    db.refresh(portfolio)
    return portfolio


def create_position(
        db: Session,
        portfolio: Portfolio,
        symbol: str = "BTC",
        quantity: Decimal = Decimal("1"),
        avg_cost_usd: Decimal = Decimal("100"),
        asset_class: AssetClass = AssetClass.CRYPTO,
        name: str | None = None,
) -> Position:
    position = Position(
        portfolio_id=portfolio.id,
        name=name or symbol,
        symbol=symbol,
        asset_class=asset_class,
        quantity=quantity,
        avg_cost_usd=avg_cost_usd,
    )
    db.add(position)
    db.commit()
    db.refresh(position)
    return position


@pytest.fixture
def sample_portfolio(db: Session) -> Portfolio:
    return create_portfolio(db)
