# portfolio_tracker/services/upstream/exchange/account.py
"""
Signed access to the exchange account: spot balances and their USD value.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

from portfolio_tracker.schemas.upstream import ExchangeAccountInfo, ExchangeBalance
from portfolio_tracker.services.exceptions import ConfigurationError
from portfolio_tracker.services.upstream.base import UpstreamClient, decode_json, parse_payload
from portfolio_tracker.services.upstream.exchange.prices import PriceResolver
from portfolio_tracker.services.upstream.exchange.signing import SignedRequestBuilder

logger = logging.getLogger(__name__)

ACCOUNT_ENDPOINT = "/api/v3/account"


@dataclass(frozen=True)
class ValuedBalance:
    asset: str
    free: Decimal
    locked: Decimal
    total: Decimal
    price_usd: Decimal | None
    value_usd: Decimal | None


@dataclass
class ValuedBalances:
    balances: list[ValuedBalance] = field(default_factory=list)
    total_value_usd: Decimal = Decimal("0")
    unpriced_assets: list[str] = field(default_factory=list)


class ExchangeAccount(UpstreamClient):
    """
    Exchange account reader.

    Args:
        signer: Builds signed URLs; a fresh signature is made per attempt
        price_resolver: Used by get_valued_balances()
        client: Optional httpx client
    """

    provider_name = "exchange"

    def __init__(
            self,
            signer: SignedRequestBuilder,
            price_resolver: PriceResolver | None = None,
            client: httpx.Client | None = None,
            timeout: float | None = None,
    ) -> None:
        super().__init__(base_url=signer.base_url, client=client, timeout=timeout)
        self._signer = signer
        self._prices = price_resolver

    def get_account_info(self) -> ExchangeAccountInfo:
        def _fetch() -> ExchangeAccountInfo:
            signed = self._signer.sign(ACCOUNT_ENDPOINT)
            response = self._send("GET", signed.url, headers=signed.headers)
            return parse_payload(ExchangeAccountInfo, decode_json(response, self.provider_name), self.provider_name)

        return self._execute_with_retry(_fetch)

    def get_balances(self, non_zero_only: bool = True) -> list[ExchangeBalance]:
        """Spot balances, by default only assets with free + locked > 0."""
        balances = self.get_account_info().balances
        if non_zero_only:
            balances = [b for b in balances if b.total > 0]
        logger.info(f"Exchange balances loaded: {len(balances)} assets")
        return balances

    def get_valued_balances(self) -> ValuedBalances:
        """
        Non-zero balances with their USD value.

        Assets without a resolvable price are kept with value None and
        listed in `unpriced_assets`.

        Raises:
            ConfigurationError: Built without a price resolver
        """
        if self._prices is None:
            raise ConfigurationError("price_resolver", "ExchangeAccount")

        balances = self.get_balances()
        prices = self._prices.get_prices(b.asset for b in balances)

        result = ValuedBalances()
        for balance in balances:
            price = prices.get(balance.asset.upper())
            value = balance.total * price if price is not None else None
            if value is None:
                result.unpriced_assets.append(balance.asset)
            else:
                result.total_value_usd += value
            result.balances.append(ValuedBalance(
                asset=balance.asset,
                free=balance.free,
                locked=balance.locked,
                total=balance.total,
                price_usd=price,
                value_usd=value,
            ))

        result.balances.sort(key=lambda b: b.value_usd or Decimal("0"), reverse=True)
        return result
