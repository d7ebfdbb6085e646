# portfolio_tracker/schemas/ledger.py
"""
Pydantic schemas for ledger input.

Validation layers:
- Field constraints: positivity, lengths, symbol pattern
- Field validators: normalization (uppercase, trim)
- Model validators: which price fields a trade needs (per asset class for buys)
- Service: existence checks, quantity available, capital available

All financial values use Decimal.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from portfolio_tracker.models import AssetClass


# =============================================================================
# PORTFOLIOS
# =============================================================================

class PortfolioCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    initial_capital: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Opening capital in USD; later moves go through contributions/withdrawals",
    )

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name cannot be blank")
        return v


class PortfolioUpdate(BaseModel):
    """Only descriptive fields; money moves through operations."""

    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)


# =============================================================================
# TRADES
# =============================================================================

class _TradeBase(BaseModel):
    symbol: str = Field(
        ...,
        min_length=1,
        max_length=20,
        pattern=r"^[A-Za-z0-9.\-]+$",
        description="Symbol prefix as used by the price sources (BTC, AAPL, GGAL)",
        examples=["BTC", "AAPL"],
    )
    quantity: Decimal = Field(..., gt=0, description="Units traded")
    note: str | None = Field(default=None, max_length=500)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


class _PricedTrade(_TradeBase):
    """
    A trade priced either in USD or in local currency plus the FX rate paid.

    With a local price the USD price is derived as price_local / fx_rate.
    Crypto only trades in USD; that rule lives where the asset class is known.
    """

    price_usd: Decimal | None = Field(default=None, gt=0)
    price_local: Decimal | None = Field(default=None, gt=0)
    fx_rate: Decimal | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_price_pair(self):
        if (self.price_local is None) != (self.fx_rate is None):
            raise ValueError("price_local and fx_rate must be given together")
        if self.price_usd is None and self.price_local is None:
            raise ValueError("Provide price_usd, or price_local together with fx_rate")
        return self

    @property
    def is_local_priced(self) -> bool:
        return self.price_local is not None and self.fx_rate is not None

    @property
    def effective_price_usd(self) -> Decimal:
        """USD price per unit, derived from the local price when given."""
        if self.is_local_priced:
            return self.price_local / self.fx_rate
        return self.price_usd


class BuyRequest(_PricedTrade):
    """A purchase. Crypto is always bought with a USD price."""

    name: str = Field(..., min_length=1, max_length=120)
    asset_class: AssetClass

    @model_validator(mode="after")
    def check_crypto_price(self) -> "BuyRequest":
        if self.asset_class == AssetClass.CRYPTO and self.price_usd is None:
            raise ValueError("Crypto purchases require price_usd")
        return self


class SellRequest(_PricedTrade):
    """A sale. Selling a crypto position with only a local price is rejected by the ledger."""


# =============================================================================
# CAPITAL
# =============================================================================

class CapitalMovement(BaseModel):
    amount: Decimal = Field(..., gt=0, description="USD amount")
    note: str | None = Field(default=None, max_length=500)
