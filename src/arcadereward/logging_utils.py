"""Request-scoped logging utilities.

Every log record carries the correlation ID of the request that produced it
and the shop domain the request is acting for, so a single play session can be
followed from start to finish to redemption.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
shop_domain_var: ContextVar[Optional[str]] = ContextVar("shop_domain", default=None)


class RequestContextFilter(logging.Filter):
    """Add correlation ID and shop domain to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        record.shop_domain = shop_domain_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "shop": "%(shop_domain)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] [%(shop_domain)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())
    logger.addHandler(handler)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        A new UUID-based correlation ID.
    """
    return f"req-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(name)


class RequestContext:
    """Context manager binding a correlation ID and shop domain to a block of code."""

    def __init__(self, correlation_id: Optional[str] = None, shop_domain: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
            shop_domain: Shop the request acts for, if already known.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self.shop_domain = shop_domain
        self._tokens = []

    def __enter__(self) -> str:
        self._tokens = [
            (correlation_id_var, correlation_id_var.set(self.correlation_id)),
            (shop_domain_var, shop_domain_var.set(self.shop_domain)),
        ]
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def bind_shop_domain(shop_domain: Optional[str]) -> None:
    """Attach the shop domain to the current context once it becomes known."""
    shop_domain_var.set(shop_domain)
