# portfolio_tracker/schemas/upstream.py
"""
Response contracts for the external providers.

Every provider payload is parsed into one of these models at the boundary,
so the services work on typed values instead of loose dictionaries. Models
ignore unknown fields and default the ones a provider sometimes omits.

Providers and payloads:
    Brokerage token endpoint  -> BrokerageToken
    Brokerage portfolio list  -> BrokerageListing / BrokerageHolding
    Exchange ticker/price     -> TickerPrice (list)
    Exchange account          -> ExchangeAccountInfo / ExchangeBalance
    Exchange server time      -> ServerTime
    Exchange websocket ticker -> StreamTicker
    CoinGecko simple/price    -> CoinGeckoPrices
    Dollar quote API          -> DollarQuote

Numeric fields are Decimal. Providers send numbers as JSON numbers or as
strings; both validate.
"""

from datetime import datetime, timezone
from decimal import Decimal
from email.utils import parsedate_to_datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, RootModel, field_validator


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


def _parse_expiry(value: Any) -> datetime | None:
    """
    Parse an absolute expiry as sent by the brokerage.

    Accepts RFC 1123 strings ("Tue, 21 Jan 2025 15:30:00 GMT"), ISO-8601
    strings and Unix timestamps in seconds or milliseconds. Anything
    unparseable becomes None so the caller falls back to expires_in.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value >= 10_000_000_000 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# BROKERAGE
# =============================================================================

class BrokerageToken(_UpstreamModel):
    """Answer of the brokerage token endpoint (password or refresh grant)."""

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    expires_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices(".expires", "expires")
    )
    refresh_expires_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices(".refreshexpires", "refreshexpires")
    )

    @field_validator("expires_at", "refresh_expires_at", mode="before")
    @classmethod
    def parse_absolute_expiry(cls, v: Any) -> datetime | None:
        return _parse_expiry(v)


class BrokerageTitle(_UpstreamModel):
    symbol: str | None = Field(default=None, validation_alias=AliasChoices("simbolo", "symbol"))
    description: str | None = Field(default=None, validation_alias=AliasChoices("descripcion", "description"))
    market: str | None = Field(default=None, validation_alias=AliasChoices("mercado", "market"))
    instrument_type: str | None = Field(default=None, validation_alias=AliasChoices("tipo", "type"))
    currency: str | None = Field(default=None, validation_alias=AliasChoices("moneda", "currency"))


class BrokerageHolding(_UpstreamModel):
    title: BrokerageTitle | None = Field(default=None, validation_alias=AliasChoices("titulo", "title"))
    quantity: Decimal = Field(default=Decimal("0"), validation_alias=AliasChoices("cantidad", "quantity"))
    last_price: Decimal | None = Field(
        default=None, validation_alias=AliasChoices("ultimoPrecio", "last_price")
    )
    valued: Decimal | None = Field(default=None, validation_alias=AliasChoices("valorizado", "valued"))


class BrokerageListing(_UpstreamModel):
    """Portfolio listing; the only place the brokerage exposes last-traded prices."""

    country: str | None = Field(default=None, validation_alias=AliasChoices("pais", "country"))
    holdings: list[BrokerageHolding] = Field(
        default_factory=list, validation_alias=AliasChoices("activos", "holdings")
    )

    def last_prices(self) -> dict[str, Decimal]:
        """Map upper-case symbol to last price, skipping entries without a positive price."""
        prices: dict[str, Decimal] = {}
        for holding in self.holdings:
            symbol = holding.title.symbol if holding.title else None
            if symbol and holding.last_price is not None and holding.last_price > 0:
                prices[symbol.upper()] = holding.last_price
        return prices


# =============================================================================
# EXCHANGE
# =============================================================================

class TickerPrice(_UpstreamModel):
    symbol: str
    price: Decimal


class ServerTime(_UpstreamModel):
    server_time: int = Field(validation_alias=AliasChoices("serverTime", "server_time"))


class ExchangeBalance(_UpstreamModel):
    asset: str
    free: Decimal = Decimal("0")
    locked: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.free + self.locked


class ExchangeAccountInfo(_UpstreamModel):
    balances: list[ExchangeBalance] = Field(default_factory=list)
    can_trade: bool | None = Field(default=None, validation_alias=AliasChoices("canTrade", "can_trade"))
    account_type: str | None = Field(default=None, validation_alias=AliasChoices("accountType", "account_type"))


class StreamTicker(_UpstreamModel):
    """24h ticker event from the exchange websocket (only the fields we use)."""

    symbol: str = Field(validation_alias=AliasChoices("s", "symbol"))
    close: Decimal = Field(validation_alias=AliasChoices("c", "close"))
    event_time: int | None = Field(default=None, validation_alias=AliasChoices("E", "event_time"))


class CoinGeckoPrices(RootModel[dict[str, dict[str, Decimal]]]):
    """`{"bitcoin": {"usd": 43000.12}, ...}`"""

    def usd(self, coin_id: str) -> Decimal | None:
        return self.root.get(coin_id, {}).get("usd")


# =============================================================================
# DOLLAR QUOTES
# =============================================================================

class DollarQuote(_UpstreamModel):
    currency: str = Field(default="USD", validation_alias=AliasChoices("moneda", "currency"))
    house: str = Field(validation_alias=AliasChoices("casa", "house"))
    name: str = Field(default="", validation_alias=AliasChoices("nombre", "name"))
    buy: Decimal | None = Field(default=None, validation_alias=AliasChoices("compra", "buy"))
    sell: Decimal | None = Field(default=None, validation_alias=AliasChoices("venta", "sell"))
    updated_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("fechaActualizacion", "updated_at")
    )
