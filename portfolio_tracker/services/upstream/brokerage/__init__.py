# portfolio_tracker/services/upstream/brokerage/__init__.py
"""Brokerage API: session tokens, layered retry and the authenticated gateway."""

from portfolio_tracker.services.upstream.brokerage.gateway import BrokerageGateway
from portfolio_tracker.services.upstream.brokerage.retry_policy import (
    BrokerageRetryPolicy,
    RetryCategory,
    RetryDecision,
)
from portfolio_tracker.services.upstream.brokerage.token_authority import TokenAuthority

__all__ = [
    "BrokerageGateway",
    "BrokerageRetryPolicy",
    "RetryCategory",
    "RetryDecision",
    "TokenAuthority",
]
