# portfolio_tracker/utils/__init__.py
"""
Cross-cutting utilities: logging setup and correlation ID context.

Usage:
    from portfolio_tracker.utils import setup_logging, correlation_scope
"""

from portfolio_tracker.utils.context import (
    get_correlation_id,
    set_correlation_id,
    clear_correlation_id,
    new_correlation_id,
    correlation_scope,
)
from portfolio_tracker.utils.logging import setup_logging, get_logger

__all__ = [
    "setup_logging",
    "get_logger",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "new_correlation_id",
    "correlation_scope",
]
