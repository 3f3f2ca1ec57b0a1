"""
Error taxonomy for the language server bridge.

Every failure the bridge surfaces to a caller is a ``BridgeError`` subclass
carrying an internal ``ErrorCode``, a user-facing message, an
``ErrorContext`` and optional recovery actions. Callers can branch on the
concrete class (``BinaryNotFoundError`` vs ``ProcessCrashedError``) instead
of parsing messages.

JSON-RPC error codes used on the wire live in ``JsonRpcErrorCode``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from lspbridge.constants import utcnow


class JsonRpcErrorCode(IntEnum):
    """JSON-RPC 2.0 and LSP error codes."""

    # Standard JSON-RPC 2.0 errors
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # LSP reserved range
    SERVER_NOT_INITIALIZED = -32002
    UNKNOWN_ERROR_CODE = -32001
    REQUEST_FAILED = -32803
    SERVER_CANCELLED = -32802
    CONTENT_MODIFIED = -32801
    REQUEST_CANCELLED = -32800


class ErrorCode(IntEnum):
    """Internal error codes for categorization."""

    # Launch errors (1000-1999)
    BINARY_NOT_FOUND = 1001
    LAUNCH_FAILED = 1002

    # Process errors (2000-2999)
    PROCESS_CRASHED = 2001
    SERVER_UNAVAILABLE = 2002

    # Transport errors (3000-3999)
    PROTOCOL_ERROR = 3001

    # Request errors (4000-4999)
    REQUEST_TIMED_OUT = 4001
    REQUEST_CANCELLED = 4002
    SERVER_ERROR = 4003

    # Session errors (5000-5999)
    SESSION_SHUTTING_DOWN = 5001
    SESSION_UNAVAILABLE = 5002

    # Configuration errors (6000-6999)
    INVALID_CONFIG = 6001


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RecoveryAction:
    """Suggested action to recover from an error."""

    description: str
    command: str | None = None
    automated: bool = False


@dataclass
class ErrorContext:
    """Context information for an error."""

    operation: str | None = None
    file_path: str | None = None
    language: str | None = None
    workspace_root: str | None = None
    method: str | None = None
    request_id: int | str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    additional_info: dict[str, Any] = field(default_factory=dict)


class BridgeError(Exception):
    """Base error class for the bridge."""

    code: ErrorCode = ErrorCode.SERVER_UNAVAILABLE
    default_user_message: str = "Language server error."
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        context: ErrorContext | None = None,
        recovery_actions: list[RecoveryAction] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message
        self.context = context or ErrorContext()
        self.recovery_actions = recovery_actions or []
        self.original_error = original_error

    def get_formatted_message(self) -> str:
        """Get a formatted error message for display to users."""
        parts = [
            f"[Error] {self.user_message}",
            f"   Code: {self.code.value}",
        ]

        if self.context.operation:
            parts.append(f"   Operation: {self.context.operation}")
        if self.context.file_path:
            parts.append(f"   File: {self.context.file_path}")
        if self.context.language:
            parts.append(f"   Language: {self.context.language}")

        if self.recovery_actions:
            parts.append("")
            parts.append("Suggested actions:")
            for i, action in enumerate(self.recovery_actions, 1):
                parts.append(f"   {i}. {action.description}")
                if action.command:
                    parts.append(f"      Run: {action.command}")

        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "name": self.__class__.__name__,
            "code": self.code.value,
            "message": str(self),
            "user_message": self.user_message,
            "severity": self.severity.value,
            "context": {
                "operation": self.context.operation,
                "file_path": self.context.file_path,
                "language": self.context.language,
                "workspace_root": self.context.workspace_root,
                "method": self.context.method,
                "request_id": self.context.request_id,
                "timestamp": self.context.timestamp.isoformat(),
                "additional_info": self.context.additional_info,
            },
            "recovery_actions": [
                {"description": a.description, "command": a.command, "automated": a.automated}
                for a in self.recovery_actions
            ],
            "original_error": str(self.original_error) if self.original_error else None,
        }


class BinaryNotFoundError(BridgeError):
    """The configured server executable does not exist on PATH."""

    code = ErrorCode.BINARY_NOT_FOUND
    default_user_message = "Language server executable not found."
    severity = ErrorSeverity.HIGH

    def __init__(self, command: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "recovery_actions",
            [RecoveryAction(f"Install '{command}' and make sure it is on PATH", command=f"which {command}")],
        )
        super().__init__(f"Executable '{command}' not found", **kwargs)
        self.command = command


class LaunchFailedError(BridgeError):
    """The server process could not be spawned or never became ready."""

    code = ErrorCode.LAUNCH_FAILED
    default_user_message = "Language server failed to start."
    severity = ErrorSeverity.HIGH


class ProcessCrashedError(BridgeError):
    """A ready server process exited without being asked to."""

    code = ErrorCode.PROCESS_CRASHED
    default_user_message = "Language server exited unexpectedly."
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, returncode: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode


class ServerUnavailableError(BridgeError):
    """The server cannot serve a request right now (exited, pipe closed, or dead)."""

    code = ErrorCode.SERVER_UNAVAILABLE
    default_user_message = "Language server is not available."


class ProtocolError(BridgeError):
    """A frame or JSON-RPC envelope could not be decoded.

    ``resume_at`` is the buffer offset where decoding can continue after
    the offending message has been skipped.
    """

    code = ErrorCode.PROTOCOL_ERROR
    default_user_message = "Malformed message from language server."
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, resume_at: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.resume_at = resume_at


class RequestTimedOutError(BridgeError):
    """A pending request exceeded its deadline."""

    code = ErrorCode.REQUEST_TIMED_OUT
    default_user_message = "Language server request timed out."
    severity = ErrorSeverity.LOW


class RequestCancelledError(BridgeError):
    """A pending request was cancelled by its caller."""

    code = ErrorCode.REQUEST_CANCELLED
    default_user_message = "Request was cancelled."
    severity = ErrorSeverity.LOW


class ServerError(BridgeError):
    """The server answered a request with a JSON-RPC error object."""

    code = ErrorCode.SERVER_ERROR
    default_user_message = "Language server returned an error."

    def __init__(self, rpc_code: int, message: str, data: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.rpc_code = rpc_code
        self.data = data


class SessionShuttingDownError(BridgeError):
    """The session has begun teardown and accepts no new work."""

    code = ErrorCode.SESSION_SHUTTING_DOWN
    default_user_message = "Language server session is shutting down."
    severity = ErrorSeverity.LOW


class SessionUnavailableError(BridgeError):
    """The session exhausted its restart budget; reactivation is required."""

    code = ErrorCode.SESSION_UNAVAILABLE
    default_user_message = "Language server session is unavailable."
    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "recovery_actions",
            [RecoveryAction("Reactivate the workspace to start a fresh server", command="lspbridge check <file>")],
        )
        super().__init__(message, **kwargs)


class ConfigurationError(BridgeError):
    """Error related to configuration issues."""

    code = ErrorCode.INVALID_CONFIG
    default_user_message = "Configuration error occurred."
    severity = ErrorSeverity.HIGH
