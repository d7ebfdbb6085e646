# tests/schemas/test_upstream_schemas.py
"""
Tests for provider response contracts.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from portfolio_tracker.schemas.upstream import (
    BrokerageListing,
    BrokerageToken,
    CoinGeckoPrices,
    DollarQuote,
    ExchangeBalance,
    StreamTicker,
)

EXPECTED = datetime(2025, 1, 21, 15, 30, tzinfo=timezone.utc)


class TestBrokerageToken:
    @pytest.mark.parametrize("raw", [
        "Tue, 21 Jan 2025 15:30:00 GMT",
        "2025-01-21T15:30:00Z",
        "2025-01-21T15:30:00",
        1737473400,
        1737473400000,
    ])
    def test_absolute_expiry_formats(self, raw):
        token = BrokerageToken.model_validate({"access_token": "a", ".expires": raw})

        assert token.expires_at == EXPECTED

    def test_unparseable_expiry_is_none(self):
        token = BrokerageToken.model_validate({"access_token": "a", ".expires": "soon", "expires_in": 900})

        assert token.expires_at is None
        assert token.expires_in == 900

    def test_refresh_expiry_alias(self):
        token = BrokerageToken.model_validate({
            "access_token": "a",
            "refresh_token": "r",
            ".refreshexpires": "Tue, 21 Jan 2025 15:30:00 GMT",
        })

        assert token.refresh_expires_at == EXPECTED

    def test_access_token_required(self):
        with pytest.raises(ValidationError):
            BrokerageToken.model_validate({"access_token": ""})


class TestBrokerageListing:
    def test_last_prices_skip_unpriced(self):
        listing = BrokerageListing.model_validate({
            "activos": [
                {"titulo": {"simbolo": "ggal"}, "ultimoPrecio": "1500.25"},
                {"titulo": {"simbolo": "AL30"}, "ultimoPrecio": None},
                {"titulo": None, "ultimoPrecio": 10},
                {"ultimoPrecio": 10},
            ],
        })

        assert listing.last_prices() == {"GGAL": Decimal("1500.25")}


class TestExchangeModels:
    def test_balance_total(self):
        balance = ExchangeBalance.model_validate({"asset": "BTC", "free": "0.1", "locked": "0.05"})

        assert balance.total == Decimal("0.15")

    def test_stream_ticker_short_names(self):
        ticker = StreamTicker.model_validate({"s": "BTCUSDT", "c": "43000.1", "E": 1, "extra": True})

        assert ticker.symbol == "BTCUSDT"
        assert ticker.close == Decimal("43000.1")

    def test_coingecko_usd(self):
        prices = CoinGeckoPrices.model_validate({"bitcoin": {"usd": 43000}, "tether": {"eur": 0.9}})

        assert prices.usd("bitcoin") == Decimal("43000")
        assert prices.usd("tether") is None
        assert prices.usd("dogecoin") is None


class TestDollarQuote:
    def test_spanish_field_names(self):
        quote = DollarQuote.model_validate({
            "moneda": "USD",
            "casa": "blue",
            "nombre": "Blue",
            "compra": 1180,
            "venta": "1200.5",
            "fechaActualizacion": "2026-01-15T15:00:00.000Z",
        })

        assert quote.house == "blue"
        assert quote.sell == Decimal("1200.5")
        assert quote.updated_at.tzinfo is not None

    def test_missing_prices_allowed(self):
        quote = DollarQuote.model_validate({"casa": "tarjeta"})

        assert quote.buy is None
        assert quote.sell is None
