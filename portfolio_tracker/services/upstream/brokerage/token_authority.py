# portfolio_tracker/services/upstream/brokerage/token_authority.py
"""
Brokerage session token management.

The brokerage issues short-lived bearer tokens through an OAuth-style token
endpoint that accepts two grants:
- password:       username + password  -> access token + refresh token
- refresh_token:  refresh token        -> new access token + refresh token

Refresh tokens are single use: two renewals racing each other would leave
one of them holding a revoked token. Renewal is therefore single-flight.
The first thread that finds the token missing or about to expire takes the
lock and renews; every other thread blocks on the same lock and, once
inside, finds a fresh token and returns it without calling upstream.

Token state is an immutable value swapped in one assignment, so the
lock-free fast path never observes a token paired with another token's
expiry.

Renewal order:
    1. Usable refresh token?  -> refresh grant
    2. Refresh grant failed or no usable refresh token -> password grant
    3. Password grant rejected (400/401) -> AuthenticationError

Transient failures (timeouts, 5xx, 429) on the token endpoint are retried
by the base class with exponential backoff before they count as failures.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from portfolio_tracker.schemas.upstream import BrokerageToken
from portfolio_tracker.services.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ServiceError,
    UpstreamError,
    UpstreamResponseError,
)
from portfolio_tracker.services.upstream.base import UpstreamClient, decode_json, parse_payload

logger = logging.getLogger(__name__)

# Renew this long before the provider's stated expiry
EXPIRY_BUFFER = timedelta(seconds=60)

# Used when the provider sends neither an absolute expiry nor expires_in
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=15)

CREDENTIAL_REJECTED_STATUSES = frozenset({400, 401})


@dataclass(frozen=True)
class TokenState:
    access_token: str
    access_expires_at: datetime
    refresh_token: str | None
    refresh_expires_at: datetime | None


class TokenAuthority(UpstreamClient):
    """
    Owns the brokerage access/refresh token pair.

    Args:
        token_url: Absolute URL of the token endpoint
        username: Brokerage account username
        password: Brokerage account password
        client: Optional httpx client (tests pass one with a MockTransport)
        timeout: Per-request timeout for the token endpoint
        clock: Returns the current aware datetime; injectable for tests

    Raises:
        ConfigurationError: If any of URL, username or password is missing
    """

    provider_name = "brokerage-auth"

    def __init__(
            self,
            token_url: str | None,
            username: str | None,
            password: str | None,
            client: httpx.Client | None = None,
            timeout: float | None = None,
            clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not token_url:
            raise ConfigurationError("brokerage_token_url", "TokenAuthority")
        if not username:
            raise ConfigurationError("brokerage_username", "TokenAuthority")
        if not password:
            raise ConfigurationError("brokerage_password", "TokenAuthority")

        super().__init__(base_url=token_url, client=client, timeout=timeout)
        self._username = username
        self._password = password
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._state: TokenState | None = None
        self.renewal_count = 0

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def get_valid_token(self) -> str:
        """
        Return an access token that is not within the expiry buffer.

        Raises:
            AuthenticationError: Credentials rejected
            UpstreamError: Token endpoint unreachable after retries
        """
        token = self._usable_access_token(self._state)
        if token is not None:
            return token

        with self._lock:
            token = self._usable_access_token(self._state)
            if token is not None:
                logger.debug("Brokerage token renewed by a concurrent caller")
                return token
            return self._renew()

    def clear_tokens(self) -> None:
        """Forget both tokens; the next call performs a full renewal."""
        with self._lock:
            self._state = None
        logger.info("Brokerage tokens cleared")

    @property
    def has_valid_token(self) -> bool:
        return self._usable_access_token(self._state) is not None

    def token_status(self) -> dict:
        """Expiry information for health output. Never includes the tokens."""
        state = self._state
        now = self._clock()
        return {
            "has_token": state is not None,
            "access_expires_at": state.access_expires_at.isoformat() if state else None,
            "refresh_expires_at": (
                state.refresh_expires_at.isoformat() if state and state.refresh_expires_at else None
            ),
            "access_expired": state is None or now >= state.access_expires_at,
            "refresh_expired": (
                state is None
                or state.refresh_expires_at is None
                or now >= state.refresh_expires_at
            ),
        }

    def preload(self, background: bool = True) -> None:
        """
        Fetch a token ahead of the first real request.

        Failures are logged and swallowed; the first real call will try again.

        Args:
            background: Run in a daemon thread instead of blocking the caller
        """
        if background:
            threading.Thread(target=self._preload, name="brokerage-token-preload", daemon=True).start()
        else:
            self._preload()

    # =========================================================================
    # RENEWAL (lock held)
    # =========================================================================

    def _preload(self) -> None:
        try:
            self.get_valid_token()
            logger.info("Brokerage token preloaded")
        except ServiceError as e:
            logger.warning(f"Brokerage token preload failed, deferring to first request: {e}")

    def _usable_access_token(self, state: TokenState | None) -> str | None:
        if state is None:
            return None
        if self._clock() >= state.access_expires_at - EXPIRY_BUFFER:
            return None
        return state.access_token

    def _refresh_usable(self, state: TokenState | None) -> bool:
        if state is None or not state.refresh_token:
            return False
        if state.refresh_expires_at is None:
            return True
        return self._clock() < state.refresh_expires_at - EXPIRY_BUFFER

    def _renew(self) -> str:
        state = self._state

        if self._refresh_usable(state):
            try:
                token = self._exchange({
                    "refresh_token": state.refresh_token,
                    "grant_type": "refresh_token",
                })
                logger.info("Brokerage access token refreshed")
                return self._store(token)
            except UpstreamError as e:
                logger.warning(f"Refresh grant failed, falling back to password grant: {e}")
            except AuthenticationError as e:
                logger.warning(f"Refresh token rejected, falling back to password grant: {e}")
        elif state is not None:
            logger.info("Brokerage refresh token missing or expired, using password grant")

        token = self._exchange({
            "username": self._username,
            "password": self._password,
            "grant_type": "password",
        })
        logger.info("Brokerage access token obtained with password grant")
        return self._store(token)

    def _exchange(self, form: dict[str, str]) -> BrokerageToken:
        """
        POST a grant to the token endpoint.

        Raises:
            AuthenticationError: 400/401 from the endpoint
            UpstreamError: Anything else after retries
        """
        try:
            response = self._execute_with_retry(
                self._send,
                "POST",
                self.base_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except UpstreamResponseError as e:
            if e.status_code in CREDENTIAL_REJECTED_STATUSES:
                raise AuthenticationError(
                    "brokerage",
                    f"{form['grant_type']} grant rejected",
                    status_code=e.status_code,
                ) from e
            raise

        self.renewal_count += 1
        return parse_payload(BrokerageToken, decode_json(response, self.provider_name), self.provider_name)

    def _store(self, token: BrokerageToken) -> str:
        """
        Keep `token` as the current state and return its access token.

        Raises:
            UpstreamResponseError: The token is already expired or inside the buffer
        """
        now = self._clock()

        if token.expires_at is not None:
            access_expires_at = token.expires_at
        elif token.expires_in:
            access_expires_at = now + timedelta(seconds=token.expires_in)
        else:
            logger.warning("Brokerage token has no expiry information, assuming default lifetime")
            access_expires_at = now + DEFAULT_TOKEN_LIFETIME

        if access_expires_at - EXPIRY_BUFFER <= now:
            raise UpstreamResponseError(
                self.provider_name,
                f"token expires at {access_expires_at.isoformat()}, inside the renewal buffer",
            )

        self._state = TokenState(
            access_token=token.access_token,
            access_expires_at=access_expires_at,
            refresh_token=token.refresh_token,
            refresh_expires_at=token.refresh_expires_at or access_expires_at,
        )
        logger.debug(f"Brokerage token valid until {access_expires_at.isoformat()}")
        return token.access_token
