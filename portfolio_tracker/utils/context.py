# portfolio_tracker/utils/context.py
"""
Unit-of-work context for the Portfolio Tracker.

Holds a correlation ID in a ContextVar so that every log line emitted while
valuing a portfolio, renewing a brokerage token or writing a snapshot can be
traced back to the operation that triggered it.

ContextVars are per-thread (and per-task), so worker threads started by the
valuation fan-out do not inherit the caller's ID automatically; use
`copy_context().run(...)` or `correlation_scope(existing_id)` inside the
worker when the ID must follow.

Usage:
    from portfolio_tracker.utils.context import correlation_scope

    with correlation_scope():
        engine.valuate(db, portfolio_id)
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# =============================================================================
# CONTEXT VARIABLES
# =============================================================================

_correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


# =============================================================================
# CORRELATION ID
# =============================================================================

def get_correlation_id() -> str | None:
    """Return the current correlation ID, or None if not set."""
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


def new_correlation_id() -> str:
    """Generate a short random correlation ID."""
    return uuid.uuid4().hex[:12]


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Run a block under a correlation ID, restoring the previous one after.

    Args:
        correlation_id: ID to use. A new one is generated when omitted.

    Yields:
        The correlation ID active inside the block.
    """
    value = correlation_id or new_correlation_id()
    token = _correlation_id_var.set(value)
    try:
        yield value
    finally:
        _correlation_id_var.reset(token)
