# portfolio_tracker/services/upstream/base.py
"""
Shared HTTP plumbing for the external providers.

Every provider client extends UpstreamClient, which gives it:
- One httpx.Client (injected in tests with an httpx.MockTransport)
- Translation of transport failures and HTTP statuses into the typed
  UpstreamError family
- JSON decoding and pydantic parsing that fail with UpstreamResponseError
- `_execute_with_retry`, exponential backoff for transient failures

Status mapping:
    2xx             -> response returned
    418, 429        -> RateLimitError (Retry-After header honoured)
    5xx             -> ProviderUnavailableError
    other 4xx       -> UpstreamResponseError (status_code kept, so callers
                       can branch on 400/401)
    timeout / connection / DNS errors -> ProviderUnavailableError
    undecodable body, redirect loop   -> UpstreamResponseError

Retry configuration can be overridden by subclasses (or per instance in
tests) through the class attributes below.
"""

import logging
from typing import Any, Callable, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError as PydanticValidationError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from portfolio_tracker.config import settings
from portfolio_tracker.services.exceptions import (
    ProviderUnavailableError,
    RateLimitError,
    UpstreamResponseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

RATE_LIMIT_STATUSES = frozenset({418, 429})


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (numeric form only)."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def raise_for_upstream_status(response: httpx.Response, provider: str) -> None:
    """
    Raise the typed error matching a non-2xx response.

    Raises:
        RateLimitError: 418/429
        ProviderUnavailableError: 5xx
        UpstreamResponseError: any other non-2xx
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    if status in RATE_LIMIT_STATUSES:
        raise RateLimitError(
            provider,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            status_code=status,
        )

    detail = response.text[:200] if response.content else response.reason_phrase
    if status >= 500:
        raise ProviderUnavailableError(provider, f"HTTP {status}: {detail}", status_code=status)

    raise UpstreamResponseError(provider, f"HTTP {status}: {detail}", status_code=status)


def decode_json(response: httpx.Response, provider: str) -> Any:
    """Decode a JSON body; an empty body decodes to None."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as e:
        raise UpstreamResponseError(provider, f"body is not JSON ({e})", status_code=response.status_code) from e


def parse_payload(model: type[M], payload: Any, provider: str) -> M:
    """Validate a decoded payload against a response contract."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise UpstreamResponseError(
            provider, f"unexpected {model.__name__} shape: {e.error_count()} error(s)"
        ) from e


def parse_payload_list(model: type[M], payload: Any, provider: str) -> list[M]:
    """Validate a decoded JSON array of objects."""
    try:
        return TypeAdapter(list[model]).validate_python(payload)
    except PydanticValidationError as e:
        raise UpstreamResponseError(
            provider, f"unexpected list[{model.__name__}] shape: {e.error_count()} error(s)"
        ) from e


class UpstreamClient:
    """
    Base class for provider clients.

    Attributes:
        provider_name: Name used in errors and logs
        base_url: Provider base URL without trailing slash
        timeout: Default per-request timeout in seconds

    Retry Configuration:
        - MAX_RETRY_ATTEMPTS: Total attempts (default: 3)
        - RETRY_MIN_WAIT: Minimum wait in seconds (default: 1)
        - RETRY_MAX_WAIT: Maximum wait in seconds (default: 10)
        - RETRY_MULTIPLIER: Exponential multiplier (default: 1)
    """

    provider_name: str = "upstream"

    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: float = 1
    RETRY_MAX_WAIT: float = 10
    RETRY_MULTIPLIER: float = 1

    def __init__(
            self,
            base_url: str,
            client: httpx.Client | None = None,
            timeout: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client()
        self._owns_client = client is None
        self.timeout = timeout if timeout is not None else settings.http_timeout

    def close(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            self._client.close()

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def _send(
            self,
            method: str,
            url: str,
            *,
            params: dict[str, Any] | None = None,
            data: dict[str, Any] | None = None,
            json: Any = None,
            headers: dict[str, str] | None = None,
            timeout: float | None = None,
    ) -> httpx.Response:
        """
        Perform one HTTP request and raise on anything but 2xx.

        Raises:
            ProviderUnavailableError: Timeout, connection failure or 5xx
            RateLimitError: 418/429
            UpstreamResponseError: Other non-2xx, undecodable body, redirect loop
        """
        try:
            response = self._client.request(
                method,
                url,
                params=params,
                data=data,
                json=json,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(self.provider_name, f"timeout calling {url}") from e
        except (httpx.DecodingError, httpx.TooManyRedirects) as e:
            raise UpstreamResponseError(self.provider_name, f"{type(e).__name__}: {e}") from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(self.provider_name, f"{type(e).__name__}: {e}") from e

        raise_for_upstream_status(response, self.provider_name)
        return response

    def _get_json(
            self,
            endpoint: str,
            params: dict[str, Any] | None = None,
            headers: dict[str, str] | None = None,
            timeout: float | None = None,
    ) -> Any:
        response = self._send("GET", self._url(endpoint), params=params, headers=headers, timeout=timeout)
        return decode_json(response, self.provider_name)

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            **kwargs: Any,
    ) -> T:
        """
        Execute a function with retry logic for transient failures.

        Retries ProviderUnavailableError and RateLimitError with exponential
        backoff; everything else propagates on the first attempt.

        Raises:
            The last exception if all retries fail
        """

        @retry(
            stop=stop_after_attempt(self.MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(
                multiplier=self.RETRY_MULTIPLIER,
                min=self.RETRY_MIN_WAIT,
                max=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type((ProviderUnavailableError, RateLimitError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return func(*args, **kwargs)

        return _inner()
