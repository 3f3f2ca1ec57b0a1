"""
Safe logging utility for the bridge.

STDIO discipline:
- The bridge talks to language servers over their stdin/stdout pipes, and an
  editor host may in turn talk to the bridge over its own stdout.
- All log output therefore goes to STDERR; nothing here writes to STDOUT.

Correlation ID Support:
- Uses contextvars to propagate a correlation ID (usually the session key)
  across the threads that serve one request
- The ID is injected into every record as ``extra["correlation_id"]``
- Use with_correlation_id() for scoped correlation IDs
"""

import os
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Generator

from loguru import logger as loguru_logger

# ============================================================================
# Request Context
# ============================================================================


@dataclass
class RequestContext:
    """Context for correlation ID tracking."""

    correlation_id: str
    operation: str | None = None
    start_time: float | None = None


_request_context: ContextVar[RequestContext | None] = ContextVar(
    "request_context", default=None
)


def get_request_context() -> RequestContext | None:
    """Get the current request context (if any)."""
    return _request_context.get()


def get_correlation_id() -> str | None:
    """Get the current correlation ID (if any)."""
    ctx = get_request_context()
    return ctx.correlation_id if ctx else None


@contextmanager
def with_correlation_id(
    correlation_id: str,
    operation: str | None = None,
) -> Generator[RequestContext, None, None]:
    """
    Context manager for running code with a correlation ID.

    All log messages within this context carry the correlation ID. Threads
    started inside the block do not inherit it; the supervisor re-enters the
    context on its reader threads explicitly.

    Args:
        correlation_id: The correlation ID to use
        operation: Optional operation name for additional context

    Yields:
        The RequestContext object
    """
    context = RequestContext(
        correlation_id=correlation_id,
        operation=operation,
        start_time=time.time(),
    )
    token = _request_context.set(context)
    try:
        yield context
    finally:
        _request_context.reset(token)


# ============================================================================
# Logger Configuration
# ============================================================================

_LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | {extra[correlation_id]} - <level>{message}</level>"
)


def is_debug_enabled() -> bool:
    """Check if debug mode is enabled."""
    return os.environ.get("DEBUG", "").lower() == "true"


def get_log_level() -> str:
    """Resolve the log level from LSPBRIDGE_LOG_LEVEL, then DEBUG."""
    level = os.environ.get("LSPBRIDGE_LOG_LEVEL", "").strip().upper()
    if level:
        return level
    return "DEBUG" if is_debug_enabled() else "INFO"


def _inject_correlation_id(record: Any) -> None:
    record["extra"].setdefault("correlation_id", get_correlation_id() or "-")


def configure_logging(level: str | None = None) -> None:
    """Route all bridge logging to stderr at the given (or environment) level."""
    loguru_logger.remove()
    loguru_logger.add(
        sys.stderr,
        level=level or get_log_level(),
        format=_LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )


loguru_logger.configure(patcher=_inject_correlation_id)

# Export loguru logger for direct use
logger = loguru_logger
