"""
Logging utilities for Vector Sync Orchestrator

Structured JSON logging plus a context filter that stamps sync context
(component, job id, batch number) onto every record a logger emits.
"""

import logging
import sys
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

_PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came from ``extra`` or a context filter
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as one JSON object per line.

    Fields passed through ``extra`` and context set with
    :func:`set_log_context` are emitted under ``"context"``.
    """

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}"
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_context:
            context = {
                key: value for key, value in record.__dict__.items()
                if key not in _RECORD_ATTRS and not key.startswith("_")
            }
            if context:
                log_entry["context"] = context

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class SyncContextFilter(logging.Filter):
    """Adds sticky context fields to records; explicit ``extra`` wins on conflicts."""

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def set_context(self, **kwargs):
        self.context.update(kwargs)

    def clear_context(self):
        self.context.clear()

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _make_formatter(structured: bool) -> logging.Formatter:
    return StructuredFormatter() if structured else logging.Formatter(_PLAIN_FORMAT)


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Attach console (and optional file) handlers to a logger.

    Args:
        name: Logger name, usually the package name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = get_logger(name)
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"unknown log level: {level}")
    logger.setLevel(numeric_level)

    # Replace handlers from an earlier call instead of stacking them
    for handler in [h for h in logger.handlers if getattr(h, "_vso_handler", False)]:
        logger.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(_make_formatter(structured))
        handler._vso_handler = True
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with a sync context filter attached.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if not hasattr(logger, "context_filter"):
        context_filter = SyncContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return logger


def set_log_context(logger: logging.Logger, **kwargs):
    """
    Set sticky context variables for a logger.

    Args:
        logger: Logger instance
        **kwargs: Context variables to set
    """
    if hasattr(logger, "context_filter"):
        logger.context_filter.set_context(**kwargs)


def clear_log_context(logger: logging.Logger):
    if hasattr(logger, "context_filter"):
        logger.context_filter.clear_context()


class LoggerContext:
    """
    Context manager for temporary log context.

    Restores the previous context on exit, so nested uses compose.
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self.context = kwargs
        self.old_context: Dict[str, Any] = {}

    def __enter__(self):
        if hasattr(self.logger, "context_filter"):
            self.old_context = self.logger.context_filter.context.copy()
            self.logger.context_filter.set_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if hasattr(self.logger, "context_filter"):
            self.logger.context_filter.context = self.old_context
