"""
Core types for lspbridge.

Re-exports the error taxonomy so callers can write
``from lspbridge.types import BinaryNotFoundError``.
"""

from .errors import (
    BinaryNotFoundError,
    BridgeError,
    ConfigurationError,
    ErrorCode,
    ErrorContext,
    ErrorSeverity,
    JsonRpcErrorCode,
    LaunchFailedError,
    ProcessCrashedError,
    ProtocolError,
    RecoveryAction,
    RequestCancelledError,
    RequestTimedOutError,
    ServerError,
    ServerUnavailableError,
    SessionShuttingDownError,
    SessionUnavailableError,
)

__all__ = [
    "BinaryNotFoundError",
    "BridgeError",
    "ConfigurationError",
    "ErrorCode",
    "ErrorContext",
    "ErrorSeverity",
    "JsonRpcErrorCode",
    "LaunchFailedError",
    "ProcessCrashedError",
    "ProtocolError",
    "RecoveryAction",
    "RequestCancelledError",
    "RequestTimedOutError",
    "ServerError",
    "ServerUnavailableError",
    "SessionShuttingDownError",
    "SessionUnavailableError",
]
