"""
Request/response correlation for one session.

The router assigns ids to outgoing requests, matches incoming responses,
fans incoming notifications out to subscribers, answers server-initiated
requests, and owns cancellation and per-request timeouts.

Threading model:
- Any thread may call ``send``/``notify``/``cancel``.
- Exactly one reader thread at a time calls ``dispatch``.
- The writer only queues bytes, so ``_write_lock`` is never held across a
  pipe write and the reader can answer server requests while a large
  outgoing request is still draining.
- Whoever pops an entry from the request table resolves it; nobody else
  touches that entry again, so every handle resolves exactly once.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from lspbridge.constants import CANCEL_REQUEST_METHOD
from lspbridge.lsp.protocol import (
    Notification,
    Request,
    Response,
    error_object,
    method_not_found,
    parse_message,
    to_payload,
)
from lspbridge.types.errors import (
    BridgeError,
    ErrorContext,
    JsonRpcErrorCode,
    RequestCancelledError,
    RequestTimedOutError,
    ServerError,
    ServerUnavailableError,
    SessionShuttingDownError,
)
from lspbridge.utils.logger import logger

NotificationHandler = Callable[[Any], None]
ServerRequestHandler = Callable[[Any], Any]
PayloadWriter = Callable[[dict[str, Any], bool], None]


class PendingRequest:
    """Handle for an in-flight request.

    Wraps a ``concurrent.futures.Future``; ``result()`` blocks until the
    server answers or the request is failed locally.
    """

    def __init__(self, request_id: int, method: str, router: RequestRouter) -> None:
        self.id = request_id
        self.method = method
        self.issued_at = time.monotonic()
        self.future: Future[Any] = Future()
        self._router = router
        self._timer: threading.Timer | None = None

    def result(self, timeout: float | None = None) -> Any:
        """Wait for the response result.

        Raises:
            ServerError: The server answered with an error object.
            RequestTimedOutError, RequestCancelledError, ServerUnavailableError,
            SessionShuttingDownError: The request was failed locally.
            concurrent.futures.TimeoutError: ``timeout`` elapsed first.
        """
        return self.future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self.future.exception(timeout)

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        """Cancel locally and tell the server; True if this call cancelled it."""
        return self._router.cancel(self.id)

    def add_done_callback(self, fn: Callable[[PendingRequest], None]) -> None:
        self.future.add_done_callback(lambda _f: fn(self))

    def __repr__(self) -> str:
        state = "done" if self.done() else "pending"
        return f"PendingRequest(id={self.id}, method={self.method!r}, {state})"


class RequestRouter:
    """Correlates JSON-RPC traffic for a single session.

    Args:
        writer: Callable that frames and queues one payload for the server.
            Its second argument marks lifecycle traffic (the handshake and
            replies to server requests). It must not block on the pipe and
            raises ``ServerUnavailableError`` when nothing can be written.
        default_timeout: Deadline in seconds applied to requests that do
            not pass their own; None means no deadline.
        name: Label used in log lines (usually the session key).
    """

    def __init__(
        self,
        writer: PayloadWriter,
        default_timeout: float | None = None,
        name: str = "session",
    ) -> None:
        self._writer = writer
        self._default_timeout = default_timeout
        self._name = name
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._table_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self._request_handlers: dict[str, ServerRequestHandler] = {}
        self._closing = False
        self._terminated = False

    # ------------------------------------------------------------------
    # Outgoing traffic
    # ------------------------------------------------------------------

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def pending_count(self) -> int:
        with self._table_lock:
            return len(self._pending)

    def pending_ids(self) -> list[int]:
        with self._table_lock:
            return sorted(self._pending)

    def send(
        self,
        method: str,
        params: Any = None,
        timeout: float | None = None,
        lifecycle: bool = False,
    ) -> PendingRequest:
        """Issue a request and return its handle without waiting.

        The entry is in the request table before any byte is written, so a
        reply racing the write always finds it. A write failure resolves the
        handle with ``ServerUnavailableError`` instead of raising.

        Raises:
            SessionShuttingDownError: Teardown has begun (unless ``lifecycle``).
        """
        with self._write_lock:
            self._check_open(method, lifecycle)
            handle = PendingRequest(next(self._ids), method, self)
            with self._table_lock:
                self._pending[handle.id] = handle

            deadline = timeout if timeout is not None else self._default_timeout
            if deadline is not None:
                handle._timer = threading.Timer(deadline, self._expire, args=(handle.id, deadline))
                handle._timer.daemon = True
                handle._timer.start()

            try:
                self._writer(to_payload(Request(id=handle.id, method=method, params=params)), lifecycle)
            except ServerUnavailableError as exc:
                self._resolve_error(handle.id, exc)
            logger.debug("[{}] -> request {} {}", self._name, handle.id, method)
            return handle

    def notify(self, method: str, params: Any = None, lifecycle: bool = False) -> None:
        """Send a notification (no id, no pending entry).

        Raises:
            SessionShuttingDownError: Teardown has begun (unless ``lifecycle``).
            ServerUnavailableError: Nothing can be written right now.
        """
        with self._write_lock:
            self._check_open(method, lifecycle)
            self._writer(to_payload(Notification(method=method, params=params)), lifecycle)
            logger.debug("[{}] -> notification {}", self._name, method)

    def cancel(self, request_id: int) -> bool:
        """Cancel a pending request.

        The handle resolves with ``RequestCancelledError`` immediately; a
        ``$/cancelRequest`` notification is sent best-effort without waiting
        for the server.
        """
        handle = self._pop(request_id)
        if handle is None:
            return False
        self._finish(
            handle,
            error=RequestCancelledError(
                f"Request {request_id} ({handle.method}) cancelled",
                context=ErrorContext(operation="cancel", method=handle.method, request_id=request_id),
            ),
        )
        if not self._closing:
            try:
                with self._write_lock:
                    self._writer(to_payload(Notification(CANCEL_REQUEST_METHOD, {"id": request_id})), False)
            except ServerUnavailableError as exc:
                logger.debug("[{}] could not send cancel for {}: {}", self._name, request_id, exc)
        return True

    def close(self) -> int:
        """Fail every pending request and refuse further caller traffic.

        Lifecycle messages stay writable so the shutdown handshake can run.

        Returns:
            Number of requests that were failed.
        """
        with self._write_lock:
            self._closing = True
            return self.fail_pending(lambda h: SessionShuttingDownError(
                f"Request {h.id} ({h.method}) abandoned: session shutting down",
                context=ErrorContext(operation="shutdown", method=h.method, request_id=h.id),
            ))

    def terminate(self) -> None:
        """Refuse every further write, lifecycle messages included."""
        with self._write_lock:
            self._closing = True
            self._terminated = True

    def fail_pending(self, make_error: Callable[[PendingRequest], BridgeError]) -> int:
        """Resolve every pending request with an error built per handle."""
        with self._table_lock:
            handles = list(self._pending.values())
            self._pending.clear()
        for handle in handles:
            self._finish(handle, error=make_error(handle))
        if handles:
            logger.debug("[{}] failed {} pending request(s)", self._name, len(handles))
        return len(handles)

    def _check_open(self, method: str, lifecycle: bool) -> None:
        if self._terminated or (self._closing and not lifecycle):
            raise SessionShuttingDownError(
                f"Session {self._name} is shutting down; refusing {method}",
                context=ErrorContext(operation="send", method=method),
            )

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Subscribe to a server notification; handlers run in registration order."""
        self._notification_handlers.setdefault(method, []).append(handler)

    def on_server_request(self, method: str, handler: ServerRequestHandler) -> None:
        """Register the handler answering a server-initiated request.

        The handler receives ``params`` and returns the result; raising
        ``ServerError`` sends that error back, any other exception becomes an
        InternalError response.
        """
        self._request_handlers[method] = handler

    # ------------------------------------------------------------------
    # Incoming traffic (reader thread)
    # ------------------------------------------------------------------

    def dispatch(self, payload: Any) -> None:
        """Route one decoded payload. Never raises for bad input."""
        try:
            message = parse_message(payload)
        except BridgeError as exc:
            logger.warning("[{}] dropping invalid message: {}", self._name, exc)
            return

        match message:
            case Response():
                self._handle_response(message)
            case Notification():
                self._handle_notification(message)
            case Request():
                self._handle_server_request(message)

    def _handle_response(self, response: Response) -> None:
        handle = self._pop(response.id) if isinstance(response.id, int) else None
        if handle is None:
            logger.debug("[{}] dropping response for unknown id {!r}", self._name, response.id)
            return
        if response.error is not None:
            error = response.error
            self._finish(
                handle,
                error=ServerError(
                    rpc_code=int(error.get("code", JsonRpcErrorCode.UNKNOWN_ERROR_CODE)),
                    message=str(error.get("message", "")),
                    data=error.get("data"),
                    context=ErrorContext(operation="response", method=handle.method, request_id=handle.id),
                ),
            )
        else:
            self._finish(handle, result=response.result)
        logger.debug(
            "[{}] <- response {} {} ({:.1f} ms)",
            self._name, handle.id, handle.method, (time.monotonic() - handle.issued_at) * 1000,
        )

    def _handle_notification(self, notification: Notification) -> None:
        handlers = list(self._notification_handlers.get(notification.method, ()))
        for handler in handlers:
            try:
                handler(notification.params)
            except Exception:
                logger.exception("[{}] notification handler for {} failed", self._name, notification.method)

    def _handle_server_request(self, request: Request) -> None:
        handler = self._request_handlers.get(request.method)
        if handler is None:
            reply = Response(id=request.id, error=method_not_found(request.method))
        else:
            try:
                reply = Response(id=request.id, result=handler(request.params))
            except ServerError as exc:
                reply = Response(id=request.id, error=error_object(exc.rpc_code, str(exc), exc.data))
            except Exception as exc:
                logger.exception("[{}] server request handler for {} failed", self._name, request.method)
                reply = Response(
                    id=request.id,
                    error=error_object(JsonRpcErrorCode.INTERNAL_ERROR, str(exc) or type(exc).__name__),
                )

        with self._write_lock:
            if self._closing:
                logger.debug("[{}] not answering {} during shutdown", self._name, request.method)
                return
            try:
                self._writer(to_payload(reply), True)
            except ServerUnavailableError as exc:
                logger.warning("[{}] could not answer {}: {}", self._name, request.method, exc)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _pop(self, request_id: int) -> PendingRequest | None:
        with self._table_lock:
            return self._pending.pop(request_id, None)

    def _expire(self, request_id: int, deadline: float) -> None:
        handle = self._pop(request_id)
        if handle is None:
            return
        logger.debug("[{}] request {} {} timed out after {}s", self._name, request_id, handle.method, deadline)
        self._finish(
            handle,
            error=RequestTimedOutError(
                f"Request {request_id} ({handle.method}) timed out after {deadline}s",
                context=ErrorContext(operation="timeout", method=handle.method, request_id=request_id),
            ),
        )

    def _resolve_error(self, request_id: int, error: BridgeError) -> None:
        handle = self._pop(request_id)
        if handle is not None:
            self._finish(handle, error=error)

    @staticmethod
    def _finish(handle: PendingRequest, result: Any = None, error: BaseException | None = None) -> None:
        if handle._timer is not None:
            handle._timer.cancel()
        if error is not None:
            handle.future.set_exception(error)
        else:
            handle.future.set_result(result)
