"""Structured Logging Configuration.

This module provides structured logging with JSON output and context binding.
Outputs JSON format for production log aggregation.

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (job IDs, post IDs, worker IDs)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL
"""

import json
import logging
import sys
from typing import Any

import structlog


class StructuredLogger:
    """Wrapper around standard Logger with structured JSON logging support.

    Provides structured logging methods (info, error, warning, debug) that
    accept keyword arguments and output JSON for log aggregation. Context
    passed to bind() is merged into every entry.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = context or {}

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that adds kwargs to every entry."""
        return StructuredLogger(self._logger, {**self._context, **kwargs})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        """Format log entry as JSON with event and context fields."""
        log_entry = {"event": event, **self._context, **kwargs}
        return json.dumps(log_entry, default=str)

    def _log(self, level: int, event: str, kwargs: dict[str, Any]) -> None:
        exc_info = kwargs.pop("exc_info", False)
        self._logger.log(level, self._format_json(event, **kwargs), exc_info=exc_info)

    def info(self, event: str, **kwargs: Any) -> None:
        """Log info message with structured context as JSON."""
        self._log(logging.INFO, event, kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        """Log error message with structured context as JSON."""
        self._log(logging.ERROR, event, kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        """Log warning message with structured context as JSON."""
        self._log(logging.WARNING, event, kwargs)

    def debug(self, event: str, **kwargs: Any) -> None:
        """Log debug message with structured context as JSON."""
        self._log(logging.DEBUG, event, kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    # Configure basic logging if not already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for JSON output.

    Called once by the worker entry point. Modules that log through
    structlog.get_logger() render ISO timestamps, the log level and the
    event as a single JSON line.

    Args:
        level: Minimum log level name (e.g., "INFO", "DEBUG").
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
