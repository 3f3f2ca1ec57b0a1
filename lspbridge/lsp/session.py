"""
Workspace session: one server process for one (workspace root, language).

The session is the only place where the process supervisor and the request
router meet. The supervisor hands decoded payloads to the router; the router
writes through the supervisor; a process exit fails the router's pending
requests before any restart begins.
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from lspbridge import __version__
from lspbridge.config import BridgeSettings
from lspbridge.lsp.registry import ServerCommand
from lspbridge.lsp.router import NotificationHandler, PendingRequest, RequestRouter, ServerRequestHandler
from lspbridge.lsp.shutdown import ShutdownCoordinator, ShutdownReport
from lspbridge.lsp.supervisor import ProcessFactory, ProcessSupervisor, ServerState
from lspbridge.types.errors import (
    BridgeError,
    ErrorContext,
    ServerUnavailableError,
    SessionShuttingDownError,
    SessionUnavailableError,
)
from lspbridge.utils.logger import logger

CLIENT_NAME = "lspbridge"

# Server-to-client requests answered with null unless the caller overrides them.
_ACKNOWLEDGED_REQUESTS = (
    "client/registerCapability",
    "client/unregisterCapability",
    "window/workDoneProgress/create",
)

# window/logMessage MessageType -> loguru level
_MESSAGE_LEVELS = {1: "ERROR", 2: "WARNING", 3: "INFO", 4: "DEBUG", 5: "DEBUG"}


@dataclass(frozen=True)
class SessionKey:
    workspace_root: str
    language_id: str

    def __str__(self) -> str:
        return f"{self.language_id}@{Path(self.workspace_root).name}"


class WorkspaceSession:
    """A live language server serving one workspace root and language.

    Args:
        workspace_root: Project root; the server's cwd and rootUri.
        language_id: Language identifier from the capability registry.
        server: Launch details.
        settings: Shared bridge settings (timeouts, restart policy).
        process_factory: ``subprocess.Popen`` or a test double.
        on_dead: Called when the restart budget is exhausted.
    """

    def __init__(
        self,
        workspace_root: str | os.PathLike[str],
        language_id: str,
        server: ServerCommand,
        settings: BridgeSettings | None = None,
        process_factory: ProcessFactory = subprocess.Popen,
        on_dead: Callable[[WorkspaceSession], None] | None = None,
    ) -> None:
        self.key = SessionKey(os.fspath(workspace_root), language_id)
        self.server = server
        self._settings = settings or BridgeSettings()
        self._on_dead = on_dead
        self._closed = threading.Event()
        self.server_capabilities: dict[str, Any] = {}
        self.server_info: dict[str, Any] | None = None
        self.last_activity = time.monotonic()
        self.created_at = time.monotonic()

        name = str(self.key)
        self.router = RequestRouter(
            writer=self._write,
            default_timeout=self._settings.request_timeout,
            name=name,
        )
        self.supervisor = ProcessSupervisor(
            server=server,
            cwd=self.key.workspace_root,
            policy=self._settings.restart_policy(server.max_restarts),
            on_message=self.router.dispatch,
            on_exit=self._on_process_exit,
            ready_check=self._initialize,
            on_dead=self._handle_dead,
            process_factory=process_factory,
            name=name,
        )
        self._install_default_handlers()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def workspace_root(self) -> str:
        return self.key.workspace_root

    @property
    def language_id(self) -> str:
        return self.key.language_id

    @property
    def state(self) -> ServerState:
        return self.supervisor.state

    @property
    def launch_timeout(self) -> float:
        if self.server.startup_timeout is not None:
            return self.server.startup_timeout
        return self._settings.launch_timeout

    @property
    def shutting_down(self) -> bool:
        return self._closed.is_set()

    def is_ready(self) -> bool:
        return self.state is ServerState.READY and not self.shutting_down

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_activity

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the server and complete the initialize handshake.

        Raises:
            BinaryNotFoundError, LaunchFailedError: see ``ProcessSupervisor.start``.
        """
        self.supervisor.start()

    def wait_until_settled(self, timeout: float | None = None) -> ServerState:
        return self.supervisor.wait_until_settled(timeout)

    def shutdown(self) -> ShutdownReport:
        """Run the shutdown handshake; idempotent."""
        self._closed.set()
        coordinator = ShutdownCoordinator(
            self.router,
            self.supervisor,
            shutdown_timeout=(
                self.server.shutdown_timeout
                if self.server.shutdown_timeout is not None
                else self._settings.shutdown_timeout
            ),
            exit_grace=self._settings.exit_grace,
            name=str(self.key),
        )
        return coordinator.run()

    def _initialize(self) -> None:
        root = Path(self.workspace_root)
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
            "rootUri": root.as_uri(),
            "rootPath": str(root),
            "workspaceFolders": [{"uri": root.as_uri(), "name": root.name}],
            "capabilities": {
                "workspace": {"configuration": True, "workspaceFolders": True},
                "window": {"workDoneProgress": True},
            },
        }
        if self.server.initialization_options is not None:
            params["initializationOptions"] = self.server.initialization_options

        pending = self.router.send("initialize", params, timeout=self.launch_timeout, lifecycle=True)
        result = pending.result()
        if not isinstance(result, dict):
            result = {}
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo")
        self.router.notify("initialized", {}, lifecycle=True)
        self.last_activity = time.monotonic()

    def _on_process_exit(self, error: BridgeError) -> None:
        failed = self.router.fail_pending(
            lambda h: ServerUnavailableError(
                f"Request {h.id} ({h.method}) lost: {error}",
                context=ErrorContext(
                    operation="process_exit",
                    method=h.method,
                    request_id=h.id,
                    workspace_root=self.workspace_root,
                    language=self.language_id,
                ),
                original_error=error,
            )
        )
        if failed:
            logger.warning("[{}] {} pending request(s) failed after server exit", self.key, failed)

    def _handle_dead(self) -> None:
        if self._on_dead is not None:
            self._on_dead(self)

    def _write(self, payload: dict[str, Any], lifecycle: bool = False) -> None:
        self.supervisor.write(payload, lifecycle)

    # ------------------------------------------------------------------
    # Editor-facing API
    # ------------------------------------------------------------------

    def send(self, method: str, params: Any = None, timeout: float | None = None) -> PendingRequest:
        """Issue a request; see ``RequestRouter.send``."""
        self._check_usable(method)
        self.last_activity = time.monotonic()
        return self.router.send(method, params, timeout=timeout)

    def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Issue a request and wait for its result."""
        return self.send(method, params, timeout=timeout).result()

    def notify(self, method: str, params: Any = None) -> None:
        self._check_usable(method)
        self.last_activity = time.monotonic()
        self.router.notify(method, params)

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        self.router.on_notification(method, handler)

    def on_server_request(self, method: str, handler: ServerRequestHandler) -> None:
        self.router.on_server_request(method, handler)

    def _check_usable(self, method: str) -> None:
        if self.shutting_down:
            raise SessionShuttingDownError(
                f"Session {self.key} is shutting down; refusing {method}",
                context=ErrorContext(operation="send", method=method, language=self.language_id),
            )
        if self.state is ServerState.DEAD:
            raise SessionUnavailableError(
                f"Session {self.key} is dead; reactivate it first",
                context=ErrorContext(operation="send", method=method, language=self.language_id),
            )

    # ------------------------------------------------------------------
    # Default client-side handlers
    # ------------------------------------------------------------------

    def _install_default_handlers(self) -> None:
        for method in _ACKNOWLEDGED_REQUESTS:
            self.router.on_server_request(method, lambda _params: None)
        self.router.on_server_request("workspace/configuration", self._answer_configuration)
        self.router.on_server_request(
            "workspace/workspaceFolders",
            lambda _params: [{"uri": Path(self.workspace_root).as_uri(), "name": Path(self.workspace_root).name}],
        )
        self.router.on_notification("window/logMessage", self._log_server_message)
        self.router.on_notification("window/showMessage", self._log_server_message)

    def _answer_configuration(self, params: Any) -> list[Any]:
        items = params.get("items", []) if isinstance(params, dict) else []
        settings = self.server.settings
        answers: list[Any] = []
        for item in items:
            section = item.get("section") if isinstance(item, dict) else None
            answers.append(_lookup_section(settings, section))
        return answers

    def _log_server_message(self, params: Any) -> None:
        if not isinstance(params, dict):
            return
        level = _MESSAGE_LEVELS.get(params.get("type", 4), "DEBUG")
        logger.log(level, "[{}] server: {}", self.key, params.get("message", ""))

    def status(self) -> dict[str, Any]:
        return {
            "workspace_root": self.workspace_root,
            "language_id": self.language_id,
            "server": self.server.name,
            "state": self.state.value,
            "pid": self.supervisor.pid,
            "spawn_count": self.supervisor.spawn_count,
            "restart_count": self.supervisor.restart_count,
            "pending_requests": self.router.pending_count,
            "shutting_down": self.shutting_down,
        }

    def __repr__(self) -> str:
        return f"WorkspaceSession({self.key}, state={self.state})"


def _lookup_section(settings: Any, section: str | None) -> Any:
    """Resolve a dotted ``workspace/configuration`` section in nested settings."""
    if settings is None:
        return None
    if not section:
        return settings
    node = settings
    for part in section.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node
