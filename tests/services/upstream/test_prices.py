# tests/services/upstream/test_prices.py
"""
Tests for PriceResolver and its source clients.
"""

from decimal import Decimal

import httpx
import pytest

from portfolio_tracker.services.circuit_breaker import CircuitBreaker, CircuitState
from portfolio_tracker.services.upstream.exchange import (
    CoinGeckoClient,
    ExchangeTickerClient,
    PriceResolver,
)
from tests.conftest import corrupt_gzip_handler, json_response, mock_client, sequence_handler

TICKERS = [
    {"symbol": "BTCUSDT", "price": "43000.50"},
    {"symbol": "ETHUSDT", "price": "2300.10"},
    {"symbol": "ETHBTC", "price": "0.0535"},
]

GECKO = {"bitcoin": {"usd": 42900}, "ethereum": {"usd": 2290.5}, "solana": {"usd": 98.7}}


class Ticker:
    def __init__(self, seconds: float = 0.0):
        self.seconds = seconds

    def __call__(self) -> float:
        return self.seconds


class Sources:
    """Builds a resolver over mock exchange and CoinGecko transports."""

    def __init__(self, exchange_handler, gecko_handler, breaker=None, cache_ttl=60.0):
        exchange_client, self.exchange = mock_client(exchange_handler)
        gecko_client, self.gecko = mock_client(gecko_handler)
        self.clock = Ticker()
        self.breaker = breaker or CircuitBreaker(name="exchange", failure_threshold=2)
        self.resolver = PriceResolver(
            exchange=ExchangeTickerClient(base_url="https://exchange.test", client=exchange_client),
            fallback=CoinGeckoClient(base_url="https://gecko.test/api/v3", client=gecko_client),
            breaker=self.breaker,
            cache_ttl=cache_ttl,
            clock=self.clock,
        )


def ok(payload):
    return sequence_handler(json_response(payload))


def down():
    return sequence_handler(httpx.ConnectError("unreachable"))


class TestShortCircuits:
    def test_empty_input_makes_no_calls(self):
        sources = Sources(ok(TICKERS), ok(GECKO))

        assert sources.resolver.get_prices([]) == {}
        assert sources.exchange.call_count == 0
        assert sources.gecko.call_count == 0

    def test_usdt_is_one_without_calls(self):
        sources = Sources(ok(TICKERS), ok(GECKO))

        assert sources.resolver.get_prices(["usdt"]) == {"USDT": Decimal("1")}
        assert sources.exchange.call_count == 0


class TestPrimarySource:
    def test_filters_usdt_pairs(self):
        sources = Sources(ok(TICKERS), ok(GECKO))

        prices = sources.resolver.get_prices(["btc", "ETH", "USDT"])

        assert prices == {"BTC": Decimal("43000.50"), "ETH": Decimal("2300.10"), "USDT": Decimal("1")}
        assert sources.exchange.requests[0].url.path == "/api/v3/ticker/price"
        assert sources.gecko.call_count == 0

    def test_partial_match_does_not_use_fallback(self):
        sources = Sources(ok(TICKERS), ok(GECKO))

        prices = sources.resolver.get_prices(["BTC", "UNKNOWN"])

        assert prices == {"BTC": Decimal("43000.50")}
        assert sources.gecko.call_count == 0

    def test_get_price_single(self):
        sources = Sources(ok(TICKERS), ok(GECKO))

        assert sources.resolver.get_price("eth") == Decimal("2300.10")
        assert sources.resolver.get_price("nope") is None

    def test_no_matching_pairs_uses_fallback_and_counts_as_success(self):
        sources = Sources(ok([{"symbol": "ETHBTC", "price": "0.05"}]), ok(GECKO))

        prices = sources.resolver.get_prices(["SOL"])

        assert prices == {"SOL": Decimal("98.7")}
        assert sources.breaker.failure_count == 0


class TestFallback:
    def test_primary_failure_uses_fallback_and_records_failure(self):
        sources = Sources(down(), ok(GECKO))

        prices = sources.resolver.get_prices(["BTC"])

        assert prices == {"BTC": Decimal("42900")}
        assert sources.breaker.failure_count == 1

    def test_open_breaker_skips_primary(self):
        breaker = CircuitBreaker(name="exchange", recovery_timeout=300)
        breaker.force_open()
        sources = Sources(ok(TICKERS), ok(GECKO), breaker=breaker)

        prices = sources.resolver.get_prices(["ETH"])

        assert prices == {"ETH": Decimal("2290.5")}
        assert sources.exchange.call_count == 0

    def test_repeated_failures_open_breaker(self):
        sources = Sources(down(), ok(GECKO))

        sources.resolver.get_prices(["BTC"])
        sources.resolver.get_prices(["BTC"])
        calls_before = sources.exchange.call_count
        sources.resolver.get_prices(["BTC"])

        assert sources.breaker.state == CircuitState.OPEN
        assert sources.exchange.call_count == calls_before

    def test_fallback_requests_every_known_coin_once(self):
        sources = Sources(down(), ok(GECKO))

        sources.resolver.get_prices(["BTC"])

        params = sources.gecko.requests[0].url.params
        assert params["vs_currencies"] == "usd"
        ids = params["ids"].split(",")
        assert "bitcoin" in ids and "solana" in ids
        assert ids == sorted(ids)

    def test_both_sources_down(self):
        sources = Sources(down(), down())

        assert sources.resolver.get_prices(["BTC", "USDT"]) == {"USDT": Decimal("1")}


class TestFallbackCache:
    def test_served_from_cache_within_ttl(self):
        sources = Sources(down(), ok(GECKO), cache_ttl=60)

        sources.resolver.get_prices(["BTC"])
        sources.clock.seconds = 59
        sources.resolver.get_prices(["ETH"])

        assert sources.gecko.call_count == 1

    def test_refreshed_after_ttl(self):
        sources = Sources(
            down(),
            sequence_handler(json_response(GECKO), json_response({"bitcoin": {"usd": 50000}})),
            cache_ttl=60,
        )

        sources.resolver.get_prices(["BTC"])
        sources.clock.seconds = 61
        prices = sources.resolver.get_prices(["BTC"])

        assert prices == {"BTC": Decimal("50000")}
        assert sources.gecko.call_count == 2

    def test_stale_cache_served_when_refresh_fails(self):
        sources = Sources(
            down(),
            sequence_handler(json_response(GECKO), json_response({}, status_code=500)),
            cache_ttl=60,
        )

        sources.resolver.get_prices(["BTC"])
        sources.clock.seconds = 600
        prices = sources.resolver.get_prices(["BTC"])

        assert prices == {"BTC": Decimal("42900")}
        assert sources.gecko.call_count == 2


@pytest.mark.parametrize("payload", [{"not": "a list"}, [{"symbol": "BTCUSDT"}]])
def test_malformed_ticker_payload_counts_as_failure(payload):
    sources = Sources(ok(payload), ok(GECKO))

    prices = sources.resolver.get_prices(["BTC"])

    assert prices == {"BTC": Decimal("42900")}
    assert sources.breaker.failure_count == 1


def test_undecodable_ticker_body_counts_as_failure():
    sources = Sources(corrupt_gzip_handler, ok(GECKO))

    prices = sources.resolver.get_prices(["BTC"])

    assert prices == {"BTC": Decimal("42900")}
    assert sources.breaker.failure_count == 1
    assert sources.gecko.call_count == 1
