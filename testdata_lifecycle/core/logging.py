from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional


# Context variables for enriched logging
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
owner_id_var: ContextVar[Optional[str]] = ContextVar("owner_id", default=None)


class LoggingContextFilter(logging.Filter):
    """
    Logging filter that injects correlation_id and owner_id from contextvars
    into each log record so formatters can include them.

    If no values are present in the context, placeholders are used.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        cid = correlation_id_var.get()
        oid = owner_id_var.get()
        setattr(record, "correlation_id", cid or "-")
        setattr(record, "owner_id", oid or "-")
        return True


# PUBLIC_INTERFACE
def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure root logging with a structured format and context filter."""
    handler = logging.StreamHandler(stream=sys.stdout)
    fmt = (
        "%(asctime)s | %(levelname)s | %(name)s | cid=%(correlation_id)s | owner=%(owner_id)s | "
        "%(message)s"
    )
    formatter = logging.Formatter(fmt=fmt)
    handler.setFormatter(formatter)
    handler.addFilter(LoggingContextFilter())

    root = logging.getLogger()
    # Remove pre-existing default handlers configured elsewhere (e.g., basicConfig)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level)


# PUBLIC_INTERFACE
@contextmanager
def log_context(
    *, correlation_id: Optional[str] = None, owner_id: Optional[str] = None
) -> Iterator[None]:
    """
    Bind correlation_id/owner_id for log records emitted inside the block.

    Usage:
        with log_context(correlation_id=str(rule.id), owner_id=rule.owner_id):
            await engine.evaluate(rule)
    """
    token_corr = correlation_id_var.set(correlation_id)
    token_owner = owner_id_var.set(owner_id)
    try:
        yield
    finally:
        correlation_id_var.reset(token_corr)
        owner_id_var.reset(token_owner)
