"""
Logging utility module for mongowatch.

Provides JSON-structured logging with correlation ID propagation, so the log
lines of one watch attempt can be grouped together.
"""

import json
import logging
import sys
import uuid
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from contextvars import ContextVar

# Context variable for correlation ID propagation
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context.

    Returns:
        Current correlation ID or None if not set
    """
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID in context.

    Args:
        correlation_id: Optional correlation ID. If None, generates a new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def clear_correlation_id():
    """Clear the correlation ID from context."""
    _correlation_id.set(None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_data['correlation_id'] = correlation_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # fields passed with logger.xxx(..., extra={...})
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure the ``mongowatch`` logger hierarchy for a process.

    Args:
        level: Level name, e.g. "DEBUG"
        json_output: JSON lines if True, plain text otherwise
    """
    root = logging.getLogger("mongowatch")
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root.addHandler(handler)
    root.propagate = False


class CorrelationContext:
    """Context manager for correlation ID propagation."""

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize correlation context.

        Args:
            correlation_id: Optional correlation ID. If None, generates a new UUID.
        """
        self.correlation_id = correlation_id
        self._previous_id: Optional[str] = None

    def __enter__(self) -> str:
        """Enter context and set correlation ID.

        Returns:
            The correlation ID
        """
        self._previous_id = get_correlation_id()
        return set_correlation_id(self.correlation_id)

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore previous correlation ID."""
        if self._previous_id is not None:
            set_correlation_id(self._previous_id)
        else:
            clear_correlation_id()
