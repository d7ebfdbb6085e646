# portfolio_tracker/services/upstream/exchange/__init__.py
"""Crypto exchange: request signing, prices with fallback, account balances, live stream."""

from portfolio_tracker.services.upstream.exchange.account import ExchangeAccount, ValuedBalances
from portfolio_tracker.services.upstream.exchange.prices import (
    CoinGeckoClient,
    ExchangeTickerClient,
    PriceResolver,
)
from portfolio_tracker.services.upstream.exchange.signing import (
    ServerClock,
    SignedRequest,
    SignedRequestBuilder,
)
from portfolio_tracker.services.upstream.exchange.stream import PriceStream, PriceTick, Subscription

__all__ = [
    "ExchangeAccount",
    "ValuedBalances",
    "CoinGeckoClient",
    "ExchangeTickerClient",
    "PriceResolver",
    "ServerClock",
    "SignedRequest",
    "SignedRequestBuilder",
    "PriceStream",
    "PriceTick",
    "Subscription",
]
