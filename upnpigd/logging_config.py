"""Logging configuration for upnpigd.

Console output goes through Rich, or through a JSON formatter when
structured logging is enabled. Records carry a correlation ID so that the
log lines of one discovery or control call can be grouped.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console

from upnpigd.exceptions import IGDError

if TYPE_CHECKING:  # pragma: no cover
    from upnpigd.models import ObservabilityConfig

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class CorrelationFilter(logging.Filter):
    """Filter to add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record."""
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    _RESERVED = frozenset(
        {
            "name",
            "msg",
            "args",
            "levelname",
            "levelno",
            "pathname",
            "filename",
            "module",
            "exc_info",
            "exc_text",
            "stack_info",
            "lineno",
            "funcName",
            "created",
            "msecs",
            "relativeCreated",
            "thread",
            "threadName",
            "processName",
            "process",
            "taskName",
            "correlation_id",
        }
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(
            {
                key: value
                for key, value in record.__dict__.items()
                if key not in self._RESERVED
            }
        )

        return json.dumps(log_entry, default=str)


def setup_logging(config: ObservabilityConfig) -> None:
    """Set up logging configuration."""
    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)

    level = config.log_level.value
    if config.structured_logging:
        console_handler: dict[str, Any] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "structured",
            "filters": ["correlation"],
            "stream": sys.stderr,
        }
    else:
        console_handler = {
            "()": "rich.logging.RichHandler",
            "level": level,
            "formatter": "rich",
            "filters": ["correlation"],
            "console": Console(stderr=True),
            "show_path": False,
            "rich_tracebacks": True,
        }

    logging_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "rich": {
                "format": "%(name)s: %(message)s",
                "datefmt": "[%X]",
            },
            "structured": {
                "()": StructuredFormatter,
            },
            "simple": {
                "format": "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "correlation": {
                "()": CorrelationFilter,
            },
        },
        "handlers": {
            "console": console_handler,
        },
        "loggers": {
            "upnpigd": {
                "level": level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": logging.WARNING,
            "handlers": ["console"],
        },
    }

    if config.log_file:
        logging_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured" if config.structured_logging else "simple",
            "filters": ["correlation"],
            "filename": config.log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
        }
        logging_config["loggers"]["upnpigd"]["handlers"].append("file")

    logging.config.dictConfig(logging_config)

    if config.log_correlation_id:
        correlation_id.set(str(uuid.uuid4()))


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"upnpigd.{name}")


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set correlation ID for the current context."""
    if corr_id is None:
        corr_id = str(uuid.uuid4())
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id.get()


class LoggingContext:
    """Context manager logging the start, end and duration of an operation."""

    def __init__(self, operation: str, logger: logging.Logger | None = None, **kwargs: Any):
        """Initialize operation context manager."""
        self.operation = operation
        self.kwargs = kwargs
        self.logger = logger or get_logger("operations")
        self.start_time: float | None = None

    def __enter__(self) -> LoggingContext:
        """Enter the context manager."""
        self.start_time = time.monotonic()
        set_correlation_id()
        self.logger.debug("Starting %s", self.operation, extra=self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Exit the context manager."""
        duration = time.monotonic() - self.start_time if self.start_time else 0.0

        if exc_type is None:
            self.logger.debug(
                "Completed %s in %.3fs", self.operation, duration, extra=self.kwargs
            )
        else:
            self.logger.debug(
                "Failed %s in %.3fs: %s",
                self.operation,
                duration,
                exc_val,
                extra=self.kwargs,
            )

        return False  # Don't suppress exceptions


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    context: str = "",
    level: int = logging.ERROR,
) -> None:
    """Log an exception with context.

    The traceback is attached only when the logger is enabled for DEBUG.
    """
    exc_info = logger.isEnabledFor(logging.DEBUG)
    if isinstance(exc, IGDError):
        logger.log(
            level,
            "%s: %s",
            context,
            exc.message,
            extra={"details": exc.details},
            exc_info=exc_info,
        )
    else:
        logger.log(level, "%s: %s", context, exc, exc_info=exc_info)
