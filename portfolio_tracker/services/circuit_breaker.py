# portfolio_tracker/services/circuit_breaker.py
"""
Circuit breaker for rate-limited upstream price sources.

The breaker stops calls to a failing provider after a run of consecutive
failures and lets a single probe through once a cool-down has elapsed.
Cool-downs grow exponentially with each consecutive opening. When the
provider answers with an explicit ban (an error carrying `retry_after`,
as Binance does with 418/429), the circuit opens at once for exactly that
long.

States:
    CLOSED    - Normal operation, requests pass through
    OPEN      - Requests rejected until the cool-down elapses
    HALF_OPEN - Cool-down elapsed, `half_open_max_calls` probes allowed

State Transitions:
    CLOSED -> OPEN: failure count reaches threshold, or a ban is signalled
    OPEN -> HALF_OPEN: cool-down (or ban) expires
    HALF_OPEN -> CLOSED: a probe succeeds
    HALF_OPEN -> OPEN: a probe fails (next cool-down is doubled)

Two usage styles are supported. Callers that need to choose a fallback
instead of raising use the explicit protocol:

    if breaker.can_make_request():
        try:
            prices = fetch()
            breaker.record_success()
        except UpstreamError as e:
            breaker.record_failure(e)

Callers that want fast-fail use the context manager or decorator, which
raise CircuitBreakerOpen while the circuit is open:

    with breaker:
        return fetch()
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Callable, TypeVar, Any

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised when a call is rejected because the circuit is open.

    Attributes:
        breaker_name: Name of the circuit breaker
        time_remaining: Seconds until the cool-down expires
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open. "
            f"Retry in {time_remaining:.1f} seconds."
        )


@dataclass
class CircuitBreakerStats:
    """Call counters, returned as a copy by CircuitBreaker.stats."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Point-in-time view of a breaker for health output."""
    name: str
    state: CircuitState
    failure_count: int
    banned_until: datetime | None
    time_remaining: float


@dataclass
class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Attributes:
        name: Identifier used in logs and errors
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Cool-down after the first opening, in seconds
        max_recovery_timeout: Upper bound for the doubled cool-down
        half_open_max_calls: Probes allowed per half-open period
        failure_window: Sliding window in seconds for counting failures (0 = off)
        excluded_exceptions: Exception types that don't count as failures
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    max_recovery_timeout: float = 600.0
    half_open_max_calls: int = 1
    failure_window: float = 0.0
    excluded_exceptions: tuple[type[Exception], ...] = field(default_factory=tuple)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _failure_timestamps: list[float] = field(default_factory=list, init=False)
    _opened_at: float = field(default=0.0, init=False)
    _cooldown: float = field(default=0.0, init=False)
    _consecutive_opens: int = field(default=0, init=False)
    _banned_until: float | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)
    _stats: CircuitBreakerStats = field(default_factory=CircuitBreakerStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")
        if self.max_recovery_timeout < self.recovery_timeout:
            raise ValueError("max_recovery_timeout cannot be below recovery_timeout")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")

        logger.info(
            f"CircuitBreaker '{self.name}' initialized: "
            f"threshold={self.failure_threshold}, "
            f"recovery_timeout={self.recovery_timeout}s"
        )

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def stats(self) -> CircuitBreakerStats:
        """Get a copy of current statistics."""
        with self._lock:
            return CircuitBreakerStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                state_changes=self._stats.state_changes,
                last_failure_time=self._stats.last_failure_time,
                last_success_time=self._stats.last_success_time,
            )

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def get_state(self) -> CircuitBreakerSnapshot:
        """Return state, failure count and ban expiry (if banned)."""
        with self._lock:
            self._check_state_transition()
            banned_until = None
            if self._banned_until is not None and self._banned_until > time.time():
                banned_until = datetime.fromtimestamp(self._banned_until, tz=timezone.utc)
            return CircuitBreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                banned_until=banned_until,
                time_remaining=self._time_until_recovery(),
            )

    # =========================================================================
    # EXPLICIT PROTOCOL
    # =========================================================================

    def can_make_request(self) -> bool:
        """
        Ask permission for one call.

        In HALF_OPEN this consumes a probe slot, so a True answer must be
        followed by record_success() or record_failure().
        """
        with self._lock:
            self._stats.total_calls += 1
            if self._can_execute():
                return True
            self._stats.rejected_calls += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self._record_success()

    def record_failure(self, error: BaseException | None = None) -> None:
        """
        Record a failed call.

        Args:
            error: The failure. If it carries a positive `retry_after`
                (seconds), the circuit opens for exactly that long.
        """
        with self._lock:
            self._record_failure(error)

    # =========================================================================
    # STATE MACHINE (call with the lock held)
    # =========================================================================

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN:
            if time.time() - self._opened_at >= self._cooldown:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._failure_timestamps.clear()
            self._consecutive_opens = 0
            self._banned_until = None

        logger.info(
            f"CircuitBreaker '{self.name}' state change: "
            f"{old_state.value} -> {new_state.value}"
        )

    def _open(self, now: float, cooldown: float | None = None) -> None:
        """Open the circuit with an explicit cool-down or the next exponential one."""
        if cooldown is None:
            self._consecutive_opens += 1
            cooldown = min(
                self.recovery_timeout * (2 ** (self._consecutive_opens - 1)),
                self.max_recovery_timeout,
            )
        self._opened_at = now
        self._cooldown = cooldown
        if self._state != CircuitState.OPEN:
            self._transition_to(CircuitState.OPEN)
        logger.warning(f"CircuitBreaker '{self.name}' open for {cooldown:.1f}s")

    def _record_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.last_success_time = time.time()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0
            self._failure_timestamps.clear()

    def _record_failure(self, error: BaseException | None = None) -> None:
        now = time.time()
        self._stats.failed_calls += 1
        self._stats.last_failure_time = now

        ban = _retry_after_seconds(error)
        if ban is not None:
            self._failure_count += 1
            self._banned_until = now + ban
            logger.warning(f"CircuitBreaker '{self.name}' banned by upstream for {ban:g}s")
            self._open(now, cooldown=ban)
            return

        if self._state == CircuitState.HALF_OPEN:
            self._failure_count += 1
            self._open(now)
            return

        if self._state == CircuitState.CLOSED:
            if self.failure_window > 0:
                self._failure_timestamps.append(now)
                cutoff = now - self.failure_window
                self._failure_timestamps = [
                    t for t in self._failure_timestamps if t > cutoff
                ]
                self._failure_count = len(self._failure_timestamps)
            else:
                self._failure_count += 1

            if self._failure_count >= self.failure_threshold:
                self._open(now)

    def _can_execute(self) -> bool:
        self._check_state_transition()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

        return False

    def _time_until_recovery(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self._cooldown - (time.time() - self._opened_at)
        return max(0.0, remaining)

    # =========================================================================
    # CONTEXT MANAGER / DECORATOR
    # =========================================================================

    def __enter__(self) -> "CircuitBreaker":
        """
        Raises:
            CircuitBreakerOpen: If the call is not allowed
        """
        with self._lock:
            self._stats.total_calls += 1

            if not self._can_execute():
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.name, self._time_until_recovery())

        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        with self._lock:
            if exc_val is None:
                self._record_success()
            elif self.excluded_exceptions and isinstance(exc_val, self.excluded_exceptions):
                self._record_success()
            else:
                self._record_failure(exc_val)

        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with self:
                return func(*args, **kwargs)
        return wrapper

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def reset(self) -> None:
        """Force the circuit back to CLOSED and forget any ban."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            logger.info(f"CircuitBreaker '{self.name}' manually reset")

    def force_open(self) -> None:
        """Open the circuit for one recovery_timeout, e.g. during maintenance."""
        with self._lock:
            self._open(time.time(), cooldown=self.recovery_timeout)
            logger.warning(f"CircuitBreaker '{self.name}' manually opened")


def _retry_after_seconds(error: BaseException | None) -> float | None:
    """Ban duration carried by an upstream error, if any."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is None:
        return None
    try:
        seconds = float(retry_after)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None
