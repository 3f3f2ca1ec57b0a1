"""
Content-Length framing for JSON-RPC over byte streams.

LSP messages have HTTP-style headers followed by a JSON body:
    Content-Length: <length>\\r\\n
    Content-Type: application/vscode-jsonrpc; charset=utf-8\\r\\n   (optional)
    \\r\\n
    <JSON body>

``read_frame`` is a pure function over a byte buffer. ``FrameDecoder`` keeps
the growing buffer between reads and yields complete payloads lazily, so
headers and bodies may arrive split across reads and several messages may
arrive in one read. Nothing here knows about JSON-RPC semantics.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from lspbridge.constants import (
    BODY_ENCODING,
    CONTENT_LENGTH_HEADER,
    CONTENT_TYPE_HEADER,
    DEFAULT_CONTENT_TYPE,
    HEADER_ENCODING,
    MAX_HEADER_BYTES,
)
from lspbridge.types.errors import ProtocolError

HEADER_TERMINATOR = b"\r\n\r\n"
_HEADER_SEPARATOR = "\r\n"
_LENGTH_MARKER = CONTENT_LENGTH_HEADER.encode(HEADER_ENCODING)


def encode_message(payload: Any, content_type: str | None = None) -> bytes:
    """Frame a JSON-serializable payload for the wire.

    Args:
        payload: The JSON-RPC message (usually a dict).
        content_type: Optional Content-Type header value. Pass
            ``DEFAULT_CONTENT_TYPE`` to emit the LSP default explicitly.

    Returns:
        Header block, blank line, then exactly Content-Length bytes of UTF-8 JSON.
    """
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode(BODY_ENCODING)
    headers = [f"{CONTENT_LENGTH_HEADER}: {len(body)}"]
    if content_type:
        headers.append(f"{CONTENT_TYPE_HEADER}: {content_type}")
    header_block = _HEADER_SEPARATOR.join(headers) + _HEADER_SEPARATOR * 2
    return header_block.encode(HEADER_ENCODING) + body


def parse_headers(block: bytes) -> dict[str, str]:
    """Parse a header block (without the terminator) into lower-cased names."""
    try:
        text = block.decode(HEADER_ENCODING)
    except UnicodeDecodeError as exc:
        raise ProtocolError("Header block is not ASCII", original_error=exc) from exc

    headers: dict[str, str] = {}
    for line in text.split(_HEADER_SEPARATOR):
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ProtocolError(f"Malformed header line: {line!r}")
        headers[name.strip().lower()] = value.strip()
    return headers


def content_length(headers: dict[str, str]) -> int:
    raw = headers.get(CONTENT_LENGTH_HEADER.lower())
    if raw is None:
        raise ProtocolError("Missing Content-Length header")
    if not raw.isdigit():
        raise ProtocolError(f"Invalid Content-Length: {raw!r}")
    return int(raw)


def _resync_offset(buffer: bytes | bytearray, start: int) -> int:
    """Offset of the next plausible header start after ``start``."""
    nxt = buffer.find(_LENGTH_MARKER, start + 1)
    return nxt if nxt != -1 else len(buffer)


def read_frame(
    buffer: bytes | bytearray,
    start: int = 0,
    max_header_bytes: int = MAX_HEADER_BYTES,
) -> tuple[Any, int] | None:
    """Decode one framed message starting at ``start``.

    Returns:
        ``(payload, end)`` where ``end`` is the offset just past the message,
        or None if the buffer does not yet hold a complete message.

    Raises:
        ProtocolError: For a malformed header or an unparsable body. The
            error's ``resume_at`` is where decoding of the next message can
            begin: the end of the declared span for a bad body, the next
            ``Content-Length`` marker for a bad header.
    """
    header_end = buffer.find(HEADER_TERMINATOR, start)
    if header_end == -1:
        if len(buffer) - start > max_header_bytes:
            raise ProtocolError(
                f"No header terminator within {max_header_bytes} bytes",
                resume_at=_resync_offset(buffer, start),
            )
        return None

    body_start = header_end + len(HEADER_TERMINATOR)
    try:
        length = content_length(parse_headers(bytes(buffer[start:header_end])))
    except ProtocolError as exc:
        raise ProtocolError(str(exc), resume_at=_resync_offset(buffer, start)) from exc

    body_end = body_start + length
    if len(buffer) < body_end:
        return None

    body = bytes(buffer[body_start:body_end])
    try:
        payload = json.loads(body.decode(BODY_ENCODING))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(
            f"Unparsable message body ({length} bytes): {exc}",
            resume_at=body_end,
            original_error=exc,
        ) from exc
    return payload, body_end


class FrameDecoder:
    """Incremental decoder over a growing byte buffer.

    Usage::

        decoder.feed(chunk)
        for payload in decoder.messages():
            ...

    A ``ProtocolError`` raised from ``messages()`` has already dropped the
    offending bytes; call ``messages()`` again to continue with the rest.
    """

    def __init__(self, max_header_bytes: int = MAX_HEADER_BYTES) -> None:
        self._buffer = bytearray()
        self._max_header_bytes = max_header_bytes

    @property
    def buffered(self) -> int:
        """Number of bytes held that do not yet form a complete message."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def messages(self) -> Iterator[Any]:
        while True:
            try:
                frame = read_frame(self._buffer, 0, self._max_header_bytes)
            except ProtocolError as exc:
                del self._buffer[: exc.resume_at or len(self._buffer)]
                raise
            if frame is None:
                return
            payload, end = frame
            del self._buffer[:end]
            yield payload

    def reset(self) -> None:
        self._buffer.clear()
