# portfolio_tracker/services/exceptions.py
"""
Service layer exceptions.

These exceptions represent domain-specific errors and contain NO transport
knowledge. Whatever hosts the services (a web app, a CLI, a scheduled job)
maps them to status codes or exit codes.

Exception Hierarchy:
    ServiceError (base)
    ├── ConfigurationError          - missing secret/credential/URL, fatal
    ├── AuthenticationError         - brokerage rejected every credential
    ├── ValidationError
    │   └── InsufficientQuantityError
    ├── ConflictError
    │   └── SnapshotExistsError
    ├── NotFoundError
    │   ├── PortfolioNotFoundError
    │   ├── PositionNotFoundError
    │   └── BalanceNotFoundError
    └── UpstreamError               - provider call failed
        ├── ProviderUnavailableError  (timeout, connection, 5xx)  retryable
        ├── RateLimitError            (429/418)                   retryable
        └── UpstreamResponseError     (other non-2xx, bad payload)

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when a breaker-guarded call is rejected
"""

from datetime import date
from decimal import Decimal

from portfolio_tracker.services.circuit_breaker import CircuitBreakerOpen


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# CONFIGURATION & AUTH
# =============================================================================


class ConfigurationError(ServiceError):
    """
    Raised when a component is built without a required setting.

    Attributes:
        setting: Name of the missing setting
    """

    def __init__(self, setting: str, component: str) -> None:
        self.setting = setting
        self.component = component
        super().__init__(f"{component} requires '{setting}' to be configured")


class AuthenticationError(ServiceError):
    """
    Raised when the brokerage rejects both the refresh and the password grant.

    Attributes:
        provider: Provider that rejected the credentials
        status_code: HTTP status of the last rejection, if any
    """

    def __init__(self, provider: str, reason: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"Authentication with '{provider}' failed: {reason}")


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when a request is well-formed but violates a business rule.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InsufficientQuantityError(ValidationError):
    """Raised when selling more units than the position holds."""

    def __init__(self, symbol: str, requested: Decimal, available: Decimal) -> None:
        self.symbol = symbol
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot sell {requested} {symbol}: only {available} held",
            field="quantity",
        )


# =============================================================================
# CONFLICT ERRORS
# =============================================================================


class ConflictError(ServiceError):
    """Raised when creating something that must be unique and already exists."""


class SnapshotExistsError(ConflictError):
    def __init__(self, portfolio_id: int, snapshot_date: date) -> None:
        self.portfolio_id = portfolio_id
        self.snapshot_date = snapshot_date
        super().__init__(
            f"Portfolio {portfolio_id} already has a snapshot for {snapshot_date.isoformat()}"
        )


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(ServiceError):
    """
    Base exception for resource not found errors.

    Attributes:
        resource_type: Type of resource (e.g., "Portfolio", "Position")
        resource_id: Identifier of the resource
    """

    def __init__(
            self,
            message: str,
            resource_type: str | None = None,
            resource_id: int | str | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)


class PortfolioNotFoundError(NotFoundError):
    def __init__(self, portfolio_id: int) -> None:
        self.portfolio_id = portfolio_id
        super().__init__(
            f"Portfolio {portfolio_id} not found",
            resource_type="Portfolio",
            resource_id=portfolio_id,
        )


class PositionNotFoundError(NotFoundError):
    def __init__(self, identifier: int | str, portfolio_id: int | None = None) -> None:
        self.portfolio_id = portfolio_id
        where = f" in portfolio {portfolio_id}" if portfolio_id is not None else ""
        super().__init__(
            f"Position {identifier} not found{where}",
            resource_type="Position",
            resource_id=identifier,
        )


class BalanceNotFoundError(NotFoundError):
    def __init__(self, description: str) -> None:
        super().__init__(
            f"Monthly balance {description} not found",
            resource_type="MonthlyBalance",
            resource_id=description,
        )


# =============================================================================
# UPSTREAM PROVIDER ERRORS
# =============================================================================


class UpstreamError(ServiceError):
    """
    Base exception for failed calls to an external provider.

    Attributes:
        provider: Name of the provider that failed
        status_code: HTTP status when the provider answered, else None
    """

    def __init__(self, message: str, provider: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class ProviderUnavailableError(UpstreamError):
    """
    Raised when a provider is temporarily unreachable.

    Examples:
    - Network timeout, connection refused/reset, DNS failure
    - Server errors (500, 502, 503, 504)

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            f"Provider '{provider}' is unavailable: {reason}",
            provider=provider,
            status_code=status_code,
        )
        self.reason = reason


class RateLimitError(UpstreamError):
    """
    Raised when the provider's rate limit has been exceeded.

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API)
    """

    def __init__(self, provider: str, retry_after: float | None = None, status_code: int = 429) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after:g}s)"
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after = retry_after


class UpstreamResponseError(UpstreamError):
    """
    Raised for non-retryable provider answers: 4xx other than 429, or a
    payload that does not match the expected shape.
    """

    def __init__(self, provider: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(
            f"Provider '{provider}' returned an invalid response: {reason}",
            provider=provider,
            status_code=status_code,
        )
        self.reason = reason


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "AuthenticationError",
    "ValidationError",
    "InsufficientQuantityError",
    "ConflictError",
    "SnapshotExistsError",
    "NotFoundError",
    "PortfolioNotFoundError",
    "PositionNotFoundError",
    "BalanceNotFoundError",
    "UpstreamError",
    "ProviderUnavailableError",
    "RateLimitError",
    "UpstreamResponseError",
    "CircuitBreakerOpen",
]
