"""Correlation ID based logging for tracing a payment across tasks.

Every intent operation runs inside a correlation context (usually keyed by the
intent id) so quote fetches, chain lookups and ledger commits for one payment
can be grepped out of interleaved async logs.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable holding the correlation ID for the current task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

JSON_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
    '"correlation_id": "%(correlation_id)s", "name": "%(name)s", '
    '"message": "%(message)s"}'
)
TEXT_FORMAT = "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Stamp the active correlation ID onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure root logging for the orchestrator.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper()))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(JSON_FORMAT if log_format == "json" else TEXT_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)

    # httpx logs every RPC poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID of the current context, if any."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new request-scoped correlation ID."""
    return f"req-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager binding a correlation ID to a block of code.

    Uses ContextVar tokens so nested contexts (a watcher event resolving into
    an intent) restore the outer ID on exit, even inside asyncio tasks.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = correlation_id_var.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id_var.reset(self._token)
