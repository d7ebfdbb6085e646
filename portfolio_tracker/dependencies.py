# portfolio_tracker/dependencies.py
"""
Composition root: process-wide service instances.

Stateful components (token state, breaker state, price cache, HTTP
connection pools) must be shared, so each is built once here, lazily on
first use, and injected into the services that need it. Tests build fresh
instances directly instead of going through this module.

Usage:
    from portfolio_tracker.dependencies import get_valuation_engine, get_snapshot_store

    engine = get_valuation_engine()
    valuation = engine.valuate(db, portfolio_id=1)
"""

import logging
from functools import lru_cache

from portfolio_tracker.config import settings
from portfolio_tracker.services.balances import MonthlyBalanceService
from portfolio_tracker.services.circuit_breaker import CircuitBreaker
from portfolio_tracker.services.ledger import PositionLedger
from portfolio_tracker.services.snapshots import SnapshotStore
from portfolio_tracker.services.upstream.brokerage import BrokerageGateway, TokenAuthority
from portfolio_tracker.services.upstream.exchange import (
    CoinGeckoClient,
    ExchangeAccount,
    ExchangeTickerClient,
    PriceResolver,
    PriceStream,
    ServerClock,
    SignedRequestBuilder,
)
from portfolio_tracker.services.upstream.quotes import QuoteFetcher
from portfolio_tracker.services.valuation import ValuationEngine

logger = logging.getLogger(__name__)


# =============================================================================
# SINGLETON SERVICE INSTANCES
# =============================================================================
# Order matters: define dependencies before dependents
# 1. exchange breaker, ticker client, CoinGecko client (no deps)
# 2. price resolver (depends on 1)
# 3. token authority -> brokerage gateway (None when not configured)
# 4. quote fetcher (no deps)
# 5. valuation engine (depends on 2, 3, 4)
# 6. snapshot store (depends on 5)


@lru_cache(maxsize=1)
def get_exchange_breaker() -> CircuitBreaker:
    """Breaker guarding the exchange price endpoint, shared by every resolver call."""
    logger.debug("Initializing singleton exchange CircuitBreaker")
    return CircuitBreaker(
        name="exchange",
        failure_threshold=settings.breaker_failure_threshold,
        recovery_timeout=settings.breaker_recovery_timeout,
        max_recovery_timeout=settings.breaker_max_recovery_timeout,
    )


@lru_cache(maxsize=1)
def get_price_resolver() -> PriceResolver:
    logger.debug("Initializing singleton PriceResolver")
    return PriceResolver(
        exchange=ExchangeTickerClient(base_url=settings.exchange_base_url),
        fallback=CoinGeckoClient(base_url=settings.coingecko_base_url),
        breaker=get_exchange_breaker(),
        cache_ttl=settings.price_cache_ttl,
    )


@lru_cache(maxsize=1)
def get_token_authority() -> TokenAuthority | None:
    """
    The brokerage token authority, or None without brokerage credentials.

    Starts a background token fetch when `brokerage_preload_token` is set.
    """
    if not settings.is_brokerage_configured:
        logger.warning("Brokerage credentials not configured; listing prices disabled")
        return None

    logger.debug("Initializing singleton TokenAuthority")
    authority = TokenAuthority(
        token_url=settings.brokerage_token_url,
        username=settings.brokerage_username,
        password=settings.brokerage_password,
    )
    if settings.brokerage_preload_token:
        authority.preload(background=True)
    return authority


@lru_cache(maxsize=1)
def get_brokerage_gateway() -> BrokerageGateway | None:
    authority = get_token_authority()
    if authority is None:
        return None
    logger.debug("Initializing singleton BrokerageGateway")
    return BrokerageGateway(token_authority=authority)


@lru_cache(maxsize=1)
def get_quote_fetcher() -> QuoteFetcher:
    logger.debug("Initializing singleton QuoteFetcher")
    return QuoteFetcher()


@lru_cache(maxsize=1)
def get_exchange_account() -> ExchangeAccount | None:
    """Signed account reader, or None without exchange API credentials."""
    if not settings.is_exchange_configured:
        logger.warning("Exchange API credentials not configured; account lookup disabled")
        return None

    logger.debug("Initializing singleton ExchangeAccount")
    clock = ServerClock(base_url=settings.exchange_base_url)
    signer = SignedRequestBuilder(
        api_key=settings.exchange_api_key,
        api_secret=settings.exchange_api_secret,
        base_url=settings.exchange_base_url,
        recv_window=settings.exchange_recv_window,
        clock=clock.now_ms,
    )
    return ExchangeAccount(signer=signer, price_resolver=get_price_resolver())


@lru_cache(maxsize=1)
def get_price_stream() -> PriceStream:
    logger.debug("Initializing singleton PriceStream")
    return PriceStream()


@lru_cache(maxsize=1)
def get_valuation_engine() -> ValuationEngine:
    logger.debug("Initializing singleton ValuationEngine")
    return ValuationEngine(
        crypto_prices=get_price_resolver(),
        listing_prices=get_brokerage_gateway(),
        fx_rates=get_quote_fetcher(),
    )


@lru_cache(maxsize=1)
def get_snapshot_store() -> SnapshotStore:
    logger.debug("Initializing singleton SnapshotStore")
    return SnapshotStore(engine=get_valuation_engine())


@lru_cache(maxsize=1)
def get_position_ledger() -> PositionLedger:
    return PositionLedger()


@lru_cache(maxsize=1)
def get_balance_service() -> MonthlyBalanceService:
    return MonthlyBalanceService()


def clear_service_caches() -> None:
    """
    Drop every singleton so the next call builds fresh instances.

    Useful in tests or after changing settings.
    """
    get_exchange_breaker.cache_clear()
    get_price_resolver.cache_clear()
    get_token_authority.cache_clear()
    get_brokerage_gateway.cache_clear()
    get_quote_fetcher.cache_clear()
    get_exchange_account.cache_clear()
    get_price_stream.cache_clear()
    get_valuation_engine.cache_clear()
    get_snapshot_store.cache_clear()
    get_position_ledger.cache_clear()
    get_balance_service.cache_clear()
    logger.debug("Service singletons cleared")
