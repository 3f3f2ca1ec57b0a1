"""
lspbridge utility modules.

- Logging (stderr-only, correlation-aware)
"""

from .logger import (
    RequestContext,
    configure_logging,
    get_correlation_id,
    get_log_level,
    get_request_context,
    is_debug_enabled,
    logger,
    with_correlation_id,
)

__all__ = [
    "RequestContext",
    "configure_logging",
    "get_correlation_id",
    "get_log_level",
    "get_request_context",
    "is_debug_enabled",
    "logger",
    "with_correlation_id",
]
