# portfolio_tracker/services/upstream/brokerage/gateway.py
"""
Authenticated access to the brokerage REST API.

Every call fetches a bearer token from the TokenAuthority, sends the
request, and on failure consults BrokerageRetryPolicy in an explicit,
bounded loop. A 401 drops the stored tokens so the next attempt renews
them.

The very first request of the gateway's lifetime gets a longer timeout;
the brokerage is slow to answer cold sessions. Retries always use the
standard timeout.
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Iterable

import httpx

from portfolio_tracker.config import settings
from portfolio_tracker.schemas.upstream import BrokerageListing
from portfolio_tracker.services.exceptions import UpstreamError
from portfolio_tracker.services.upstream.base import UpstreamClient, decode_json, parse_payload
from portfolio_tracker.services.upstream.brokerage.retry_policy import (
    BrokerageRetryPolicy,
    RetryCategory,
)
from portfolio_tracker.services.upstream.brokerage.token_authority import TokenAuthority

logger = logging.getLogger(__name__)

INITIAL_REQUEST_TIMEOUT = 45.0
STANDARD_TIMEOUT = 30.0

PORTFOLIO_ENDPOINT = "/portafolio/{country}"


class BrokerageGateway(UpstreamClient):
    """
    Brokerage client with token handling and layered retry.

    Args:
        token_authority: Source of bearer tokens
        base_url: API base URL (defaults to settings.brokerage_base_url)
        client: Optional httpx client
        retry_policy: Retry budgets; defaults to BrokerageRetryPolicy()
        sleep: Delay function, replaced in tests
    """

    provider_name = "brokerage"

    def __init__(
            self,
            token_authority: TokenAuthority,
            base_url: str | None = None,
            client: httpx.Client | None = None,
            retry_policy: BrokerageRetryPolicy | None = None,
            sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(
            base_url=base_url or settings.brokerage_base_url,
            client=client,
            timeout=STANDARD_TIMEOUT,
        )
        self._tokens = token_authority
        self._retry_policy = retry_policy or BrokerageRetryPolicy()
        self._sleep = sleep
        self._first_request_lock = threading.Lock()
        self._first_request_pending = True

    # =========================================================================
    # GENERIC CALLS
    # =========================================================================

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET an endpoint; None-valued params are dropped."""
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        return self._request("GET", endpoint, params=clean or None)

    def post(self, endpoint: str, body: Any = None) -> Any:
        return self._request("POST", endpoint, body=body)

    def _claim_initial_request(self) -> bool:
        with self._first_request_lock:
            initial = self._first_request_pending
            self._first_request_pending = False
            return initial

    def _request(
            self,
            method: str,
            endpoint: str,
            params: dict[str, Any] | None = None,
            body: Any = None,
    ) -> Any:
        """
        Perform an authenticated call with layered retry.

        Raises:
            AuthenticationError: Token could not be obtained
            UpstreamError: Final failure after the retry budgets are spent
        """
        url = self._url(endpoint)
        spent: dict[RetryCategory, int] = {}
        initial = self._claim_initial_request()
        last_error: UpstreamError | None = None

        for attempt in range(1, self._retry_policy.max_attempts + 1):
            token = self._tokens.get_valid_token()
            timeout = INITIAL_REQUEST_TIMEOUT if initial else STANDARD_TIMEOUT
            initial = False

            logger.debug(f"Brokerage {method} {endpoint} (attempt {attempt}, timeout {timeout:g}s)")
            try:
                response = self._send(
                    method,
                    url,
                    params=params,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/json",
                    },
                    timeout=timeout,
                )
                return decode_json(response, self.provider_name)
            except UpstreamError as error:
                last_error = error
                decision = self._retry_policy.decide(error, spent)
                if decision is None:
                    logger.error(f"Brokerage {method} {endpoint} failed after {attempt} attempt(s): {error}")
                    raise

                spent[decision.category] = spent.get(decision.category, 0) + 1
                logger.warning(
                    f"Brokerage {method} {endpoint} failed ({decision.category.value}), "
                    f"retrying in {decision.delay:g}s: {error}"
                )
                if decision.clear_token:
                    self._tokens.clear_tokens()
                if decision.delay > 0:
                    self._sleep(decision.delay)

        raise last_error

    # =========================================================================
    # PORTFOLIO LISTING
    # =========================================================================

    def get_portfolio_listing(self, country: str | None = None) -> BrokerageListing:
        country = country or settings.brokerage_listing_country
        payload = self.get(PORTFOLIO_ENDPOINT.format(country=country))
        return parse_payload(BrokerageListing, payload or {}, self.provider_name)

    def get_listing_prices(self, symbols: Iterable[str], country: str | None = None) -> dict[str, Decimal]:
        """
        Last-traded local-currency prices for the requested symbols.

        The brokerage has no quote-by-symbol call usable here; prices come
        from the account's own portfolio listing. Symbols missing from the
        listing are omitted.
        """
        wanted = {s.upper() for s in symbols}
        if not wanted:
            return {}

        available = self.get_portfolio_listing(country).last_prices()
        prices = {symbol: available[symbol] for symbol in wanted if symbol in available}

        missing = sorted(wanted - prices.keys())
        if missing:
            logger.warning(f"No brokerage listing price for: {', '.join(missing)}")
        logger.info(f"Brokerage listing prices resolved: {len(prices)}/{len(wanted)}")
        return prices
