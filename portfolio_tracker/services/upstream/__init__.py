# portfolio_tracker/services/upstream/__init__.py
"""
External provider clients.

Architecture:
    upstream/
    ├── base.py              # httpx plumbing, status mapping, tenacity retry
    ├── quotes.py            # Dollar quotes (FX rate for valuation)
    ├── brokerage/
    │   ├── token_authority.py  # Single-flight session tokens
    │   ├── retry_policy.py     # Pure retry budgets
    │   └── gateway.py          # Authenticated calls, listing prices
    └── exchange/
        ├── signing.py       # HMAC-SHA256 signed queries, server clock
        ├── prices.py        # Ticker prices, CoinGecko fallback, breaker
        ├── account.py       # Signed balance lookup
        └── stream.py        # Websocket price pub/sub
"""

from portfolio_tracker.services.upstream.base import UpstreamClient
from portfolio_tracker.services.upstream.quotes import QuoteFetcher

__all__ = [
    "UpstreamClient",
    "QuoteFetcher",
]
