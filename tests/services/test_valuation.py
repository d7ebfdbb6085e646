# tests/services/test_valuation.py
"""
Tests for ValuationEngine and its calculators.

Sources are the fakes from conftest, so no HTTP is involved.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from portfolio_tracker.models import AssetClass
from portfolio_tracker.services.circuit_breaker import CircuitBreaker
from portfolio_tracker.services.exceptions import PortfolioNotFoundError
from portfolio_tracker.services.upstream.exchange import CoinGeckoClient, ExchangeTickerClient, PriceResolver
from portfolio_tracker.services.valuation import ValuationEngine
from portfolio_tracker.services.valuation.calculators import PriceCalculator, percentage
from portfolio_tracker.services.valuation.types import PriceInputs
from portfolio_tracker.utils.context import correlation_scope, get_correlation_id
from tests.conftest import (
    FakeCryptoPrices,
    FakeFXRates,
    FakeListingPrices,
    corrupt_gzip_handler,
    create_portfolio,
    create_position,
    mock_client,
    unavailable,
)

VALUED_AT = datetime(2026, 1, 15, 18, 0, tzinfo=timezone.utc)


def make_engine(crypto=None, listing=None, fx=None) -> ValuationEngine:
    return ValuationEngine(
        crypto_prices=crypto,
        listing_prices=listing,
        fx_rates=fx,
        fx_quote="ccl",
        max_workers=3,
        clock=lambda: VALUED_AT,
    )


class TestCalculators:
    def test_percentage_of_zero(self):
        assert percentage(Decimal("5"), Decimal("0")) == Decimal("0")

    def test_listed_price_converted_with_fx(self, db, sample_portfolio):
        position = create_position(db, sample_portfolio, "GGAL", asset_class=AssetClass.LISTED_EQUITY)
        inputs = PriceInputs(listing_local={"GGAL": Decimal("6000")}, fx_rate=Decimal("1200"))

        result = PriceCalculator().calculate(position, inputs)

        assert result.price_usd == Decimal("5")
        assert result.price_local == Decimal("6000")
        assert result.priced

    def test_listed_price_without_fx(self, db, sample_portfolio):
        position = create_position(db, sample_portfolio, "GGAL", asset_class=AssetClass.LISTED_EQUITY)
        inputs = PriceInputs(listing_local={"GGAL": Decimal("6000")}, fx_rate=None)

        result = PriceCalculator().calculate(position, inputs)

        assert result.price_usd == Decimal("0")
        assert not result.priced


class TestValuate:
    def test_gain_on_single_crypto_position(self, db):
        """Capital 1000, realized 50, 2 BTC @ 100 valued at 150."""
        portfolio = create_portfolio(db, initial_capital=Decimal("1000"), realized_gains=Decimal("50"))
        create_position(db, portfolio, "BTC", quantity=Decimal("2"), avg_cost_usd=Decimal("100"))
        engine = make_engine(crypto=FakeCryptoPrices({"BTC": Decimal("150")}))

        result = engine.valuate(db, portfolio.id)

        assert result.current_value == Decimal("300")
        assert result.total_cost == Decimal("200")
        assert result.unrealized_gains == Decimal("100")
        assert result.total_gain == Decimal("150")
        assert result.total_invested == Decimal("1050")
        assert result.total_gain_pct == Decimal("15")
        assert result.partial is False
        assert result.warnings == []
        assert result.valued_at == VALUED_AT

    def test_unknown_portfolio(self, db):
        with pytest.raises(PortfolioNotFoundError):
            make_engine().valuate(db, 404)

    def test_no_positions_makes_no_calls(self, db):
        portfolio = create_portfolio(db, initial_capital=Decimal("500"), realized_gains=Decimal("20"))
        crypto, listing, fx = FakeCryptoPrices(), FakeListingPrices(), FakeFXRates()

        result = make_engine(crypto, listing, fx).valuate(db, portfolio.id)

        assert crypto.calls == listing.calls == fx.calls == []
        assert result.current_value == Decimal("0")
        assert result.total_invested == Decimal("520")
        assert result.total_gain == Decimal("20")
        assert result.total_gain_pct == Decimal("4")
        assert result.positions == []

    def test_zero_quantity_positions_are_ignored(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC", quantity=Decimal("0"))
        crypto = FakeCryptoPrices({"BTC": Decimal("1")})

        result = make_engine(crypto=crypto).valuate(db, sample_portfolio.id)

        assert result.positions == []
        assert crypto.calls == []

    def test_only_needed_sources_are_called(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "ETH")
        crypto, listing, fx = FakeCryptoPrices({"ETH": Decimal("2000")}), FakeListingPrices(), FakeFXRates()

        make_engine(crypto, listing, fx).valuate(db, sample_portfolio.id)

        assert crypto.calls == [["ETH"]]
        assert listing.calls == []
        assert fx.calls == []

    def test_mixed_portfolio(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC", quantity=Decimal("0.5"), avg_cost_usd=Decimal("40000"))
        create_position(db, sample_portfolio, "SPY", quantity=Decimal("10"), avg_cost_usd=Decimal("9"),
                        asset_class=AssetClass.LISTED_EQUITY)
        create_position(db, sample_portfolio, "FIMA", quantity=Decimal("100"), avg_cost_usd=Decimal("1"),
                        asset_class=AssetClass.FUND)
        crypto = FakeCryptoPrices({"BTC": Decimal("50000")})
        listing = FakeListingPrices({"SPY": Decimal("12000"), "FIMA": Decimal("1500")})
        fx = FakeFXRates(Decimal("1200"))

        result = make_engine(crypto, listing, fx).valuate(db, sample_portfolio.id)

        values = {p.symbol: p.value_usd for p in result.positions}
        assert values == {"BTC": Decimal("25000"), "SPY": Decimal("100"), "FIMA": Decimal("125")}
        assert result.current_value == Decimal("25225")
        assert result.fx_rate == Decimal("1200")
        assert sorted(listing.calls[0]) == ["FIMA", "SPY"]
        assert fx.calls == ["ccl"]

        assert [row.asset_class for row in result.breakdown] == [
            AssetClass.CRYPTO, AssetClass.LISTED_EQUITY, AssetClass.FUND,
        ]
        assert sum(row.share_pct for row in result.breakdown) == pytest.approx(Decimal("100"))
        assert sum(p.composition_pct for p in result.positions) == pytest.approx(Decimal("100"))


class TestPartialValuation:
    def test_failed_source_marks_partial(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC", quantity=Decimal("1"), avg_cost_usd=Decimal("100"))
        create_position(db, sample_portfolio, "SPY", quantity=Decimal("2"), avg_cost_usd=Decimal("10"),
                        asset_class=AssetClass.LISTED_EQUITY)
        crypto = FakeCryptoPrices(error=unavailable("exchange"))
        listing = FakeListingPrices({"SPY": Decimal("24000")})

        result = make_engine(crypto, listing, FakeFXRates(Decimal("1000"))).valuate(db, sample_portfolio.id)

        assert result.partial is True
        by_symbol = {p.symbol: p for p in result.positions}
        assert by_symbol["BTC"].price_usd == Decimal("0")
        assert by_symbol["BTC"].priced is False
        assert by_symbol["SPY"].value_usd == Decimal("48")
        assert any("crypto prices unavailable" in w for w in result.warnings)

    def test_fx_failure_zeroes_listed_prices(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "SPY", asset_class=AssetClass.LISTED_EQUITY)
        listing = FakeListingPrices({"SPY": Decimal("24000")})

        result = make_engine(listing=listing, fx=FakeFXRates(error=unavailable("dollar-api"))).valuate(
            db, sample_portfolio.id
        )

        assert result.partial is True
        assert result.fx_rate is None
        assert result.positions[0].price_usd == Decimal("0")
        assert result.positions[0].price_local == Decimal("24000")

    def test_missing_source_is_unavailable(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "GGAL", asset_class=AssetClass.LISTED_EQUITY)

        result = make_engine(fx=FakeFXRates()).valuate(db, sample_portfolio.id)

        assert result.partial is True
        assert any("no brokerage configured" in w for w in result.warnings)

    def test_unpriced_symbol_marks_partial(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC")
        create_position(db, sample_portfolio, "NEWCOIN")

        result = make_engine(crypto=FakeCryptoPrices({"BTC": Decimal("10")})).valuate(db, sample_portfolio.id)

        assert result.partial is True
        assert result.warnings == ["No USD price for NEWCOIN"]
        assert result.current_value == Decimal("10")

    def test_undecodable_price_responses_mark_partial(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC")
        create_position(db, sample_portfolio, "SPY", quantity=Decimal("2"), asset_class=AssetClass.LISTED_EQUITY)
        exchange_client, _ = mock_client(corrupt_gzip_handler)
        gecko_client, _ = mock_client(corrupt_gzip_handler)
        resolver = PriceResolver(
            exchange=ExchangeTickerClient(base_url="https://exchange.test", client=exchange_client),
            fallback=CoinGeckoClient(base_url="https://gecko.test/api/v3", client=gecko_client),
            breaker=CircuitBreaker(name="exchange"),
        )
        listing = FakeListingPrices({"SPY": Decimal("24000")})

        result = make_engine(resolver, listing, FakeFXRates(Decimal("1000"))).valuate(db, sample_portfolio.id)

        assert result.partial is True
        by_symbol = {p.symbol: p for p in result.positions}
        assert by_symbol["BTC"].priced is False
        assert by_symbol["SPY"].value_usd == Decimal("48")
        assert resolver.breaker.failure_count == 1

    def test_worker_threads_keep_correlation_id(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "BTC")
        seen = []

        class RecordingPrices(FakeCryptoPrices):
            def get_prices(self, symbols):
                seen.append(get_correlation_id())
                return super().get_prices(symbols)

        with correlation_scope("valuation-test") as cid:
            make_engine(crypto=RecordingPrices({"BTC": Decimal("1")})).valuate(db, sample_portfolio.id)

        assert seen == [cid]


class TestToDict:
    def test_rounds_to_cents(self, db, sample_portfolio):
        create_position(db, sample_portfolio, "ETH", quantity=Decimal("3"), avg_cost_usd=Decimal("1"))
        result = make_engine(crypto=FakeCryptoPrices({"ETH": Decimal("0.3333333")})).valuate(
            db, sample_portfolio.id
        )

        payload = result.to_dict()

        assert payload["summary"]["current_value"] == 1.0
        assert payload["positions"][0]["price_usd"] == 0.33
        assert payload["metadata"]["position_count"] == 1
        assert payload["metadata"]["valued_at"] == VALUED_AT.isoformat()
        assert payload["metadata"]["partial"] is False
