# portfolio_tracker/utils/logging.py
"""
Logging configuration for the Portfolio Tracker.

Provides one call, setup_logging(), that installs a stdout handler with:
- A level taken from settings.log_level unless overridden
- Either a human-readable text format or one JSON object per line
- The current correlation ID on every record
- HTTP and websocket client libraries quieted to WARNING

Log Levels:
    DEBUG   - Cache hits, signed query strings (never secrets), raw payload sizes
    INFO    - Token renewals, breaker transitions, buys/sells, snapshots
    WARNING - Retries, fallbacks, missing prices, partial valuations
    ERROR   - Exhausted retries, stream gave up reconnecting

Environment Configuration:
    LOG_LEVEL=DEBUG
    LOG_FORMAT=json
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from portfolio_tracker.config import settings
from portfolio_tracker.utils.context import get_correlation_id

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NO_CORRELATION_ID = "-"

NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "websockets",
    "websockets.client",
    "sqlalchemy.engine",
]

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "correlation_id", "message", "taskName",
}


# =============================================================================
# CORRELATION ID FILTER
# =============================================================================

class CorrelationIdFilter(logging.Filter):
    """Adds `correlation_id` to every record passing through the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


# =============================================================================
# JSON FORMATTER
# =============================================================================

class JsonFormatter(logging.Formatter):
    """
    One JSON object per record.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "portfolio_tracker.services.snapshots",
        "correlation_id": "3f2a9c1b0d4e",
        "message": "Snapshot created for portfolio 1",
        "extra": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", NO_CORRELATION_ID),
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS:
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)

        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


# =============================================================================
# SETUP FUNCTION
# =============================================================================

def setup_logging(
        level: str | None = None,
        log_format: str | None = None,
        suppress_noisy_loggers: bool = True,
) -> None:
    """
    Configure process-wide logging.

    Call once at process start (scripts, workers, the hosting web app).

    Args:
        level: Log level name. Defaults to settings.log_level.
        log_format: 'text' or 'json'. Defaults to settings.log_format.
        suppress_noisy_loggers: Set HTTP/websocket client loggers to WARNING.

    Raises:
        ValueError: If the level name is not recognised
    """
    log_level_str = level or settings.log_level
    log_level = _get_log_level(log_level_str)
    format_type = (log_format or settings.log_format).lower()

    if format_type == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=DEFAULT_TEXT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    if suppress_noisy_loggers:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level_str}, format={format_type}"
    )


def _get_log_level(level_str: str) -> int:
    """Convert a level name (case-insensitive) to a logging constant."""
    level_str = level_str.upper().strip()

    level_mapping = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    if level_str not in level_mapping:
        valid_levels = ", ".join(level_mapping.keys())
        raise ValueError(
            f"Invalid log level: '{level_str}'. "
            f"Valid levels are: {valid_levels}"
        )

    return level_mapping[level_str]


def get_logger(name: str) -> logging.Logger:
    """Return a standard logger; the correlation filter lives on the handler."""
    return logging.getLogger(name)
