# portfolio_tracker/services/upstream/quotes.py
"""
Dollar quotes from the public dollar API.

One quote per "dollar type". The `ccl` sell price is the default FX rate
used to turn local-currency listing prices into USD.

Kinds and endpoints:
    oficial  -> /v1/dolares/oficial
    blue     -> /v1/dolares/blue
    mep      -> /v1/dolares/bolsa
    ccl      -> /v1/dolares/contadoconliqui
    cripto   -> /v1/dolares/cripto
    tarjeta  -> /v1/dolares/tarjeta
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal

import httpx

from portfolio_tracker.config import settings
from portfolio_tracker.schemas.upstream import DollarQuote
from portfolio_tracker.services.exceptions import (
    UpstreamError,
    UpstreamResponseError,
    ValidationError,
)
from portfolio_tracker.services.upstream.base import UpstreamClient, parse_payload

logger = logging.getLogger(__name__)

QUOTE_ENDPOINTS: dict[str, str] = {
    "oficial": "/v1/dolares/oficial",
    "blue": "/v1/dolares/blue",
    "mep": "/v1/dolares/bolsa",
    "ccl": "/v1/dolares/contadoconliqui",
    "cripto": "/v1/dolares/cripto",
    "tarjeta": "/v1/dolares/tarjeta",
}


@dataclass(frozen=True)
class QuoteSpread:
    kind: str
    quote: DollarQuote
    spread: Decimal | None
    spread_pct: Decimal | None


@dataclass
class QuoteComparison:
    quotes: list[QuoteSpread]
    highest: QuoteSpread | None
    lowest: QuoteSpread | None


class QuoteFetcher(UpstreamClient):
    """
    Dollar API client.

    Args:
        base_url: API base URL (defaults to settings.dollar_api_base_url)
        client: Optional httpx client
        max_workers: Thread pool size for get_all_quotes()
    """

    provider_name = "dollar-api"

    def __init__(
            self,
            base_url: str | None = None,
            client: httpx.Client | None = None,
            timeout: float | None = None,
            max_workers: int = len(QUOTE_ENDPOINTS),
    ) -> None:
        super().__init__(base_url=base_url or settings.dollar_api_base_url, client=client, timeout=timeout)
        self._max_workers = max_workers

    def get_quote(self, kind: str) -> DollarQuote:
        """
        Fetch one quote.

        Raises:
            ValidationError: Unknown kind
            UpstreamError: Provider failure after retries
        """
        key = kind.strip().lower()
        endpoint = QUOTE_ENDPOINTS.get(key)
        if endpoint is None:
            raise ValidationError(
                f"Unknown dollar quote '{kind}'. Valid: {', '.join(QUOTE_ENDPOINTS)}",
                field="kind",
            )

        payload = self._execute_with_retry(self._get_json, endpoint)
        quote = parse_payload(DollarQuote, payload or {}, self.provider_name)
        logger.debug(f"Dollar quote {key}: buy={quote.buy} sell={quote.sell}")
        return quote

    def get_all_quotes(self) -> dict[str, DollarQuote]:
        """Fetch every kind concurrently; failed kinds are logged and left out."""
        quotes: dict[str, DollarQuote] = {}
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="dollar-quote") as pool:
            futures = {kind: pool.submit(self.get_quote, kind) for kind in QUOTE_ENDPOINTS}
            for kind, future in futures.items():
                try:
                    quotes[kind] = future.result()
                except UpstreamError as e:
                    logger.warning(f"Dollar quote {kind} unavailable: {e}")

        logger.info(f"Dollar quotes fetched: {len(quotes)}/{len(QUOTE_ENDPOINTS)}")
        return quotes

    def compare_quotes(self) -> QuoteComparison:
        """All available quotes sorted by sell price, highest first, with spreads."""
        rows = [
            QuoteSpread(kind=kind, quote=quote, spread=_spread(quote), spread_pct=_spread_pct(quote))
            for kind, quote in self.get_all_quotes().items()
        ]
        rows.sort(key=lambda r: r.quote.sell if r.quote.sell is not None else Decimal("-1"), reverse=True)

        priced = [r for r in rows if r.quote.sell is not None]
        return QuoteComparison(
            quotes=rows,
            highest=priced[0] if priced else None,
            lowest=priced[-1] if priced else None,
        )

    def get_usd_rate(self, kind: str = "ccl") -> Decimal:
        """
        Sell price of `kind`, in local currency per USD.

        Raises:
            UpstreamResponseError: Quote has no usable sell price
        """
        quote = self.get_quote(kind)
        if quote.sell is None or quote.sell <= 0:
            raise UpstreamResponseError(self.provider_name, f"quote '{kind}' has no sell price")
        return quote.sell


def _spread(quote: DollarQuote) -> Decimal | None:
    if quote.buy is None or quote.sell is None:
        return None
    return quote.sell - quote.buy


def _spread_pct(quote: DollarQuote) -> Decimal | None:
    spread = _spread(quote)
    if spread is None or not quote.buy:
        return None
    return spread / quote.buy * Decimal("100")
