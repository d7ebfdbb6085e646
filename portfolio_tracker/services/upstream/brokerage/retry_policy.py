# portfolio_tracker/services/upstream/brokerage/retry_policy.py
"""
Layered retry policy for brokerage calls.

The policy is a pure function of (error, retries already spent per
category); the gateway owns the loop. Categories are mutually exclusive
per attempt and each has its own budget:

    CONNECTIVITY  timeout, connection failure, 5xx   2 retries, 2s/4s/8s cap
    UNAUTHORIZED  HTTP 401                           1 retry, new token, no wait
    RATE_LIMITED  HTTP 429/418                       2 retries, fixed 3s

Anything else (400, 403, 404, malformed payloads, rejected credentials) is
not retried.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from portfolio_tracker.services.exceptions import (
    ProviderUnavailableError,
    RateLimitError,
    UpstreamError,
)


class RetryCategory(Enum):
    CONNECTIVITY = "connectivity"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class RetryDecision:
    category: RetryCategory
    delay: float
    clear_token: bool = False


@dataclass(frozen=True)
class BrokerageRetryPolicy:
    connectivity_retries: int = 2
    connectivity_base_delay: float = 2.0
    connectivity_max_delay: float = 8.0
    unauthorized_retries: int = 1
    rate_limit_retries: int = 2
    rate_limit_delay: float = 3.0

    @property
    def max_attempts(self) -> int:
        """Upper bound on attempts for one call: the first plus every budget."""
        return 1 + self.connectivity_retries + self.unauthorized_retries + self.rate_limit_retries

    @staticmethod
    def classify(error: Exception) -> RetryCategory | None:
        if isinstance(error, ProviderUnavailableError):
            return RetryCategory.CONNECTIVITY
        if isinstance(error, RateLimitError):
            return RetryCategory.RATE_LIMITED
        if isinstance(error, UpstreamError) and error.status_code == 401:
            return RetryCategory.UNAUTHORIZED
        return None

    def decide(self, error: Exception, spent: Mapping[RetryCategory, int]) -> RetryDecision | None:
        """
        Decide whether to retry after `error`.

        Args:
            error: The failure of the latest attempt
            spent: Retries already used per category for this call

        Returns:
            The retry to perform, or None when the error is final.
        """
        category = self.classify(error)
        if category is None:
            return None

        used = spent.get(category, 0)

        if category is RetryCategory.CONNECTIVITY:
            if used >= self.connectivity_retries:
                return None
            delay = min(self.connectivity_base_delay * (2 ** used), self.connectivity_max_delay)
            return RetryDecision(category, delay)

        if category is RetryCategory.UNAUTHORIZED:
            if used >= self.unauthorized_retries:
                return None
            return RetryDecision(category, 0.0, clear_token=True)

        if used >= self.rate_limit_retries:
            return None
        return RetryDecision(category, self.rate_limit_delay)
