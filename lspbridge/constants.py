"""Shared constants and helpers for lspbridge.

Centralizes protocol header names, default timeouts and the default
restart policy values used by the supervisor.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


# Wire framing
CONTENT_LENGTH_HEADER = "Content-Length"
CONTENT_TYPE_HEADER = "Content-Type"
DEFAULT_CONTENT_TYPE = "application/vscode-jsonrpc; charset=utf-8"
HEADER_ENCODING = "ascii"
BODY_ENCODING = "utf-8"

# A header block larger than this without a blank-line terminator is malformed.
MAX_HEADER_BYTES: int = 8192

# Bytes pulled from a server's stdout per read.
READ_CHUNK_SIZE: int = 65536

# Seconds to wait for the initialize handshake before a launch is declared failed.
DEFAULT_LAUNCH_TIMEOUT: float = 30.0

# Shutdown handshake bounds (seconds)
DEFAULT_SHUTDOWN_TIMEOUT: float = 5.0
DEFAULT_EXIT_GRACE: float = 2.0

# Restart policy defaults
DEFAULT_MAX_RESTARTS: int = 3
DEFAULT_RESTART_BASE_DELAY: float = 0.5
DEFAULT_RESTART_MAX_DELAY: float = 30.0
DEFAULT_STABILITY_THRESHOLD: float = 60.0

# Marker file identifying a project root when the config names none.
DEFAULT_PROJECT_MARKERS: tuple[str, ...] = ("gleam.toml",)

CANCEL_REQUEST_METHOD = "$/cancelRequest"
