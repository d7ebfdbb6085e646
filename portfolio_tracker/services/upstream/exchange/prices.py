# portfolio_tracker/services/upstream/exchange/prices.py
"""
USD price resolution for crypto symbols.

Sources, in order:
    1. Exchange ticker/price (primary): one call returning every traded
       pair; we keep `{SYMBOL}USDT` for the requested symbols. Guarded by a
       circuit breaker because the exchange bans clients that keep
       hammering it while rate limited.
    2. CoinGecko simple/price (fallback): one bulk call for every coin id
       we know, cached process-wide for `cache_ttl` seconds. When a refresh
       fails, the previous (stale) result is served.

USDT is the settlement currency and always resolves to 1 without a call.
Symbols neither source knows are left out of the result.
"""

import logging
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from portfolio_tracker.schemas.upstream import CoinGeckoPrices, TickerPrice
from portfolio_tracker.services.circuit_breaker import CircuitBreaker
from portfolio_tracker.services.exceptions import UpstreamError
from portfolio_tracker.services.upstream.base import (
    UpstreamClient,
    parse_payload,
    parse_payload_list,
)

logger = logging.getLogger(__name__)

SETTLEMENT_SYMBOL = "USDT"

TICKER_PRICE_ENDPOINT = "/api/v3/ticker/price"
SIMPLE_PRICE_ENDPOINT = "/simple/price"

# Symbol -> CoinGecko coin id
COINGECKO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "ADA": "cardano",
    "XRP": "ripple",
    "DOT": "polkadot",
    "DOGE": "dogecoin",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "ATOM": "cosmos",
    "LTC": "litecoin",
    "BCH": "bitcoin-cash",
    "NEAR": "near",
    "ALGO": "algorand",
    "FTM": "fantom",
    "SAND": "the-sandbox",
    "MANA": "decentraland",
    "AAVE": "aave",
    "CRV": "curve-dao-token",
    "GRT": "the-graph",
    "ENJ": "enjincoin",
    "CHZ": "chiliz",
    "ZIL": "zilliqa",
    "BAT": "basic-attention-token",
    "USDT": "tether",
    "USDC": "usd-coin",
}


# =============================================================================
# SOURCE CLIENTS
# =============================================================================

class ExchangeTickerClient(UpstreamClient):
    """Public ticker endpoint of the exchange. No signing needed."""

    provider_name = "exchange"

    def fetch_all_prices(self) -> dict[str, Decimal]:
        """Return {pair: price} for every traded pair, e.g. {"BTCUSDT": ...}."""
        payload = self._get_json(TICKER_PRICE_ENDPOINT)
        tickers = parse_payload_list(TickerPrice, payload, self.provider_name)
        return {ticker.symbol: ticker.price for ticker in tickers}


class CoinGeckoClient(UpstreamClient):
    provider_name = "coingecko"

    def fetch_usd_prices(self, coin_ids: Iterable[str]) -> CoinGeckoPrices:
        ids = ",".join(sorted(set(coin_ids)))
        payload = self._get_json(SIMPLE_PRICE_ENDPOINT, params={"ids": ids, "vs_currencies": "usd"})
        return parse_payload(CoinGeckoPrices, payload or {}, self.provider_name)


# =============================================================================
# RESOLVER
# =============================================================================

@dataclass(frozen=True)
class _CachedPrices:
    prices: dict[str, Decimal]
    fetched_at: float


class PriceResolver:
    """
    Resolves USD prices for crypto symbols with breaker-gated fallback.

    Args:
        exchange: Primary source client
        fallback: Secondary source client
        breaker: Circuit breaker guarding the primary source
        cache_ttl: Seconds the fallback result is served without refreshing
        coin_ids: Symbol to CoinGecko id map
        clock: Monotonic clock for cache ageing
    """

    def __init__(
            self,
            exchange: ExchangeTickerClient,
            fallback: CoinGeckoClient,
            breaker: CircuitBreaker,
            cache_ttl: float = 60.0,
            coin_ids: Mapping[str, str] | None = None,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._exchange = exchange
        self._fallback = fallback
        self._breaker = breaker
        self._cache_ttl = cache_ttl
        self._coin_ids = dict(coin_ids if coin_ids is not None else COINGECKO_IDS)
        self._clock = clock
        self._cache: _CachedPrices | None = None
        self._cache_lock = threading.Lock()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def get_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        """
        Resolve USD prices for `symbols` (case-insensitive).

        Returns:
            {SYMBOL: price}. Unresolvable symbols are omitted; an empty
            input returns {} without any upstream call.
        """
        wanted = {s.upper() for s in symbols if s}
        if not wanted:
            return {}

        result: dict[str, Decimal] = {}
        if SETTLEMENT_SYMBOL in wanted:
            result[SETTLEMENT_SYMBOL] = Decimal("1")
            wanted.discard(SETTLEMENT_SYMBOL)
        if not wanted:
            return result

        prices = self._from_primary(wanted)
        if not prices:
            prices = self._from_fallback(wanted)

        result.update(prices)

        missing = sorted(wanted - prices.keys())
        if missing:
            logger.warning(f"No USD price for: {', '.join(missing)}")
        return result

    def get_price(self, symbol: str) -> Decimal | None:
        return self.get_prices([symbol]).get(symbol.upper())

    # =========================================================================
    # SOURCES
    # =========================================================================

    def _from_primary(self, wanted: set[str]) -> dict[str, Decimal]:
        if not self._breaker.can_make_request():
            state = self._breaker.get_state()
            logger.warning(
                f"Exchange prices blocked (breaker {state.state.value}, "
                f"{state.time_remaining:.0f}s left), using fallback"
            )
            return {}

        try:
            pairs = self._exchange.fetch_all_prices()
        except UpstreamError as e:
            self._breaker.record_failure(e)
            logger.error(f"Exchange price lookup failed, using fallback: {e}")
            return {}

        prices = {
            symbol: pairs[f"{symbol}{SETTLEMENT_SYMBOL}"]
            for symbol in wanted
            if f"{symbol}{SETTLEMENT_SYMBOL}" in pairs
        }
        # The call itself worked; an empty match is a coverage gap, not an outage
        self._breaker.record_success()
        if prices:
            logger.info(f"Exchange prices resolved: {len(prices)}/{len(wanted)}")
        else:
            logger.warning("Exchange returned no matching pairs, using fallback")
        return prices

    def _from_fallback(self, wanted: set[str]) -> dict[str, Decimal]:
        cached = self._fresh_cache() or self._refresh_cache()
        if cached is None:
            return {}
        return {symbol: cached.prices[symbol] for symbol in wanted if symbol in cached.prices}

    def _fresh_cache(self) -> _CachedPrices | None:
        cached = self._cache
        if cached is not None and self._clock() - cached.fetched_at < self._cache_ttl:
            logger.debug("Fallback prices served from cache")
            return cached
        return None

    def _refresh_cache(self) -> _CachedPrices | None:
        try:
            response = self._fallback.fetch_usd_prices(self._coin_ids.values())
        except UpstreamError as e:
            stale = self._cache
            if stale is None:
                logger.error(f"Fallback price source failed and no cache is available: {e}")
                return None
            logger.warning(f"Fallback price source failed, serving stale cache: {e}")
            return stale

        prices = {}
        for symbol, coin_id in self._coin_ids.items():
            price = response.usd(coin_id)
            if price is not None:
                prices[symbol] = price

        fresh = _CachedPrices(prices=prices, fetched_at=self._clock())
        with self._cache_lock:
            self._cache = fresh
        logger.info(f"Fallback prices refreshed: {len(prices)} symbols")
        return fresh
