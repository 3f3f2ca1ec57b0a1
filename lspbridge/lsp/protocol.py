"""
JSON-RPC 2.0 message model.

Decoded payloads are classified into one of three message kinds:
- Request: has ``id`` and ``method``, expects a Response
- Response: has ``id`` and either ``result`` or ``error``
- Notification: has ``method`` but no ``id``

Business payloads (``params``, ``result``) are opaque and pass through
unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from lspbridge.types.errors import JsonRpcErrorCode, ProtocolError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass(frozen=True)
class Request:
    """A JSON-RPC request message."""

    id: RequestId
    method: str
    params: Any = None


@dataclass(frozen=True)
class Response:
    """A JSON-RPC response message."""

    id: RequestId | None
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Notification:
    """A JSON-RPC notification message (no id, no response expected)."""

    method: str
    params: Any = None


Message = Union[Request, Response, Notification]


def parse_message(payload: Any) -> Message:
    """Classify a decoded JSON value as a Request, Response or Notification.

    Raises:
        ProtocolError: If the value is not a JSON-RPC 2.0 envelope.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"JSON-RPC message must be an object, got {type(payload).__name__}")

    method = payload.get("method")
    has_id = "id" in payload and payload["id"] is not None
    msg_id = payload.get("id")

    if has_id and (isinstance(msg_id, bool) or not isinstance(msg_id, (int, str))):
        raise ProtocolError(f"Invalid JSON-RPC id: {msg_id!r}")

    if method is not None:
        if not isinstance(method, str):
            raise ProtocolError(f"Invalid JSON-RPC method: {method!r}")
        if has_id:
            return Request(id=msg_id, method=method, params=payload.get("params"))
        return Notification(method=method, params=payload.get("params"))

    if "result" in payload or "error" in payload:
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            raise ProtocolError(f"Invalid JSON-RPC error object: {error!r}")
        return Response(id=msg_id, result=payload.get("result"), error=error)

    raise ProtocolError("JSON-RPC message has neither method nor result/error")


def to_payload(message: Message) -> dict[str, Any]:
    """Build the JSON-RPC dict for a message."""
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    match message:
        case Request(id=msg_id, method=method, params=params):
            payload["id"] = msg_id
            payload["method"] = method
            if params is not None:
                payload["params"] = params
        case Notification(method=method, params=params):
            payload["method"] = method
            if params is not None:
                payload["params"] = params
        case Response(id=msg_id, result=result, error=error):
            payload["id"] = msg_id
            if error is not None:
                payload["error"] = error
            else:
                payload["result"] = result
        case _:
            raise TypeError(f"Not a JSON-RPC message: {message!r}")
    return payload


def error_object(code: int, message: str, data: Any = None) -> dict[str, Any]:
    """Build a JSON-RPC error object."""
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return error


def method_not_found(method: str) -> dict[str, Any]:
    return error_object(JsonRpcErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")
