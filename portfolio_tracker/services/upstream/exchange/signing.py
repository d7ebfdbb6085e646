# portfolio_tracker/services/upstream/exchange/signing.py
"""
HMAC-SHA256 request signing for the crypto exchange.

Signed endpoints require:
- `timestamp` in milliseconds, close to the exchange's clock
- `recvWindow`, how long after `timestamp` the request stays valid
- `signature`, hex HMAC-SHA256 of the exact query string sent, keyed by
  the API secret
- the API key in the `X-MBX-APIKEY` header (never in the query)

The canonical string keeps the caller's parameter order. The exchange
verifies the signature over the bytes it receives, so sorting or
re-encoding after signing would invalidate it.
"""

import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import quote

import httpx

from portfolio_tracker.schemas.upstream import ServerTime
from portfolio_tracker.services.exceptions import ConfigurationError, UpstreamError
from portfolio_tracker.services.upstream.base import UpstreamClient, parse_payload

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-MBX-APIKEY"
SERVER_TIME_ENDPOINT = "/api/v3/time"

# encodeURIComponent-compatible set of characters left unescaped
_UNRESERVED = "-_.!~*'()"


def _millis() -> int:
    return int(time.time() * 1000)


class ServerClock(UpstreamClient):
    """
    Tracks the offset between the local clock and the exchange clock.

    The offset is fetched lazily once. If the exchange cannot be reached the
    offset stays 0; the receive window absorbs small skews.
    """

    provider_name = "exchange"

    def __init__(
            self,
            base_url: str,
            client: httpx.Client | None = None,
            timeout: float | None = None,
            local_millis: Callable[[], int] = _millis,
    ) -> None:
        super().__init__(base_url=base_url, client=client, timeout=timeout)
        self._local_millis = local_millis
        self._offset_ms: int | None = None
        self._lock = threading.Lock()

    @property
    def offset_ms(self) -> int:
        if self._offset_ms is None:
            self.sync()
        return self._offset_ms or 0

    def sync(self) -> int:
        """Fetch server time and store the offset. Returns the offset in ms."""
        with self._lock:
            try:
                before = self._local_millis()
                payload = self._get_json(SERVER_TIME_ENDPOINT)
                server = parse_payload(ServerTime, payload, self.provider_name)
                self._offset_ms = server.server_time - before
                logger.info(f"Exchange server time offset: {self._offset_ms} ms")
            except UpstreamError as e:
                logger.warning(f"Failed to sync exchange server time, using local clock: {e}")
                self._offset_ms = 0
            return self._offset_ms

    def now_ms(self) -> int:
        return self._local_millis() + self.offset_ms


@dataclass(frozen=True)
class SignedRequest:
    url: str
    query: str
    signature: str
    headers: dict[str, str] = field(default_factory=dict)


def canonical_query(params: dict[str, Any]) -> str:
    """
    Build `k=v&k=v` in insertion order, dropping None values.

    Keys and values are percent-encoded like JavaScript's encodeURIComponent.
    """
    parts = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append(f"{quote(str(key), safe=_UNRESERVED)}={quote(str(value), safe=_UNRESERVED)}")
    return "&".join(parts)


def hmac_sha256_hex(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class SignedRequestBuilder:
    """
    Builds signed URLs and headers for private exchange endpoints.

    Args:
        api_key: Exchange API key (sent as a header)
        api_secret: Exchange API secret (signing key, never sent)
        base_url: Exchange REST base URL
        recv_window: Milliseconds a signed request stays valid
        clock: Callable returning exchange-synchronized milliseconds;
            usually `ServerClock.now_ms`

    Raises:
        ConfigurationError: If the key or the secret is missing
    """

    def __init__(
            self,
            api_key: str | None,
            api_secret: str | None,
            base_url: str,
            recv_window: int = 60000,
            clock: Callable[[], int] = _millis,
    ) -> None:
        if not api_key:
            raise ConfigurationError("exchange_api_key", "SignedRequestBuilder")
        if not api_secret:
            raise ConfigurationError("exchange_api_secret", "SignedRequestBuilder")

        self._api_key = api_key
        self._api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self._clock = clock

    def sign(self, endpoint: str, params: dict[str, Any] | None = None) -> SignedRequest:
        """
        Sign a request for `endpoint`.

        Caller parameters come first, in the order given, followed by
        `timestamp` and `recvWindow`.
        """
        signed_params: dict[str, Any] = dict(params or {})
        signed_params["timestamp"] = self._clock()
        signed_params["recvWindow"] = self.recv_window

        query = canonical_query(signed_params)
        signature = hmac_sha256_hex(query, self._api_secret)
        logger.debug(f"Signed exchange request {endpoint}?{query}")

        return SignedRequest(
            url=f"{self.base_url}{endpoint}?{query}&signature={signature}",
            query=query,
            signature=signature,
            headers={API_KEY_HEADER: self._api_key},
        )
