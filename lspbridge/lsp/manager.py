"""Workspace session lifecycle management.

Keeps a registry of live sessions keyed by (workspace root, language id),
routing opened files to the right server based on extension and starting
servers lazily on first use. At most one server process exists per key.
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Any

from lspbridge.config import BridgeConfig, BridgeSettings
from lspbridge.lsp.registry import CapabilityRegistry, Found, NotConfigured, Resolution, ServerCommand
from lspbridge.lsp.session import SessionKey, WorkspaceSession
from lspbridge.lsp.shutdown import ShutdownReport
from lspbridge.lsp.supervisor import ProcessFactory, ServerState
from lspbridge.lsp.workspace import WorkspaceProvider, file_extension
from lspbridge.types.errors import ErrorContext, SessionUnavailableError
from lspbridge.utils.logger import logger


class WorkspaceSessionManager:
    """Owns every live session.

    Each (workspace root, language) gets its own ``WorkspaceSession``,
    started on first ``activate`` and shut down on ``deactivate``.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        workspace: WorkspaceProvider | None = None,
        settings: BridgeSettings | None = None,
        process_factory: ProcessFactory = subprocess.Popen,
    ) -> None:
        self._registry = registry
        self._workspace = workspace or WorkspaceProvider()
        self._settings = settings or BridgeSettings()
        self._process_factory = process_factory
        self._sessions: dict[SessionKey, WorkspaceSession] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[SessionKey, threading.Lock] = {}

    @classmethod
    def from_config(cls, config: BridgeConfig, process_factory: ProcessFactory = subprocess.Popen) -> WorkspaceSessionManager:
        return cls(
            registry=config.registry(),
            workspace=WorkspaceProvider(config.project_markers()),
            settings=config.settings,
            process_factory=process_factory,
        )

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, file_path: str | os.PathLike[str]) -> tuple[Path | None, Resolution]:
        """Determine the project root and server for a file without spawning.

        Args:
            file_path: The opened file.

        Returns:
            (project root or None, Found | NotConfigured)
        """
        resolution = self._registry.resolve(file_extension(file_path))
        markers = resolution.server.project_markers if isinstance(resolution, Found) else None
        root = self._workspace.find_project_root(file_path, markers)
        return root, resolution

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate(self, file_path: str | os.PathLike[str]) -> WorkspaceSession | None:
        """Ensure a ready session serves the given file.

        Returns:
            The session, or None when the file has no project root or its
            extension is not configured (nothing is spawned then).

        Raises:
            BinaryNotFoundError, LaunchFailedError: A new server failed to start.
            SessionUnavailableError: The session for this file is dead; call
                ``reactivate`` to start over.
        """
        self.prune_stale()
        root, resolution = self.resolve(file_path)
        match resolution:
            case NotConfigured(extension=ext):
                logger.debug("No language server configured for '{}' ({})", ext, file_path)
                return None
            case Found(language_id=language_id, server=server):
                pass

        if root is None:
            logger.debug("No project root for {}; not activating {}", file_path, language_id)
            return None

        key = SessionKey(str(root), language_id)
        with self._key_lock(key):
            session = self._sessions.get(key)
            if session is None:
                return self._start_session(key, server)

        return self._await_usable(session, file_path)

    def reactivate(self, file_path: str | os.PathLike[str]) -> WorkspaceSession | None:
        """Discard a dead (or stopped) session for the file and activate afresh."""
        root, resolution = self.resolve(file_path)
        if isinstance(resolution, Found) and root is not None:
            key = SessionKey(str(root), resolution.language_id)
            with self._key_lock(key):
                session = self._sessions.get(key)
                state = session.state if session is not None else None
                if state in (ServerState.DEAD, ServerState.STOPPED):
                    with self._lock:
                        self._sessions.pop(key, None)
                    session.shutdown()
                    logger.info("Discarded {} session {} for reactivation", state, key)
        return self.activate(file_path)

    def _start_session(self, key: SessionKey, server: ServerCommand) -> WorkspaceSession:
        session = WorkspaceSession(
            key.workspace_root,
            key.language_id,
            server,
            settings=self._settings,
            process_factory=self._process_factory,
            on_dead=self._session_died,
        )
        logger.info("Starting {} server for {}", key.language_id, key.workspace_root)
        session.start()
        with self._lock:
            self._sessions[key] = session
        return session

    def _await_usable(self, session: WorkspaceSession, file_path: Any) -> WorkspaceSession:
        state = session.state
        if state is not ServerState.READY and state not in (ServerState.DEAD, ServerState.STOPPED):
            logger.debug("Session {} is {}; waiting for it to settle", session.key, state)
            state = session.wait_until_settled(session.launch_timeout + session.supervisor.policy.max_delay)

        if state is ServerState.READY and not session.shutting_down:
            return session
        raise SessionUnavailableError(
            f"Session {session.key} is {state}; reactivate to start a new server",
            context=ErrorContext(
                operation="activate",
                file_path=str(file_path),
                language=session.language_id,
                workspace_root=session.workspace_root,
            ),
        )

    def _session_died(self, session: WorkspaceSession) -> None:
        logger.error("Session {} exhausted its restart budget", session.key)

    def _key_lock(self, key: SessionKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    def deactivate(self, workspace_root: str | os.PathLike[str], language_id: str) -> ShutdownReport | None:
        """Shut down the session for a workspace/language pair.

        Returns:
            The shutdown report, or None if no such session exists.
        """
        key = SessionKey(os.path.abspath(workspace_root), language_id)
        with self._key_lock(key):
            session = self._sessions.get(key)
            if session is None:
                return None
            try:
                report = session.shutdown()
            finally:
                with self._lock:
                    self._sessions.pop(key, None)
        logger.info("Deactivated {} session for {}", language_id, key.workspace_root)
        return report

    def prune_stale(self) -> list[SessionKey]:
        """Deactivate sessions whose project-root marker has disappeared."""
        stale = [
            session.key
            for session in self.sessions()
            if not self._workspace.has_marker(session.workspace_root, session.server.project_markers)
        ]
        for key in stale:
            logger.info("Project marker gone from {}; closing {} session", key.workspace_root, key.language_id)
            self.deactivate(key.workspace_root, key.language_id)
        return stale

    def close_idle(self, now: float | None = None) -> list[SessionKey]:
        """Deactivate sessions idle longer than the configured idle timeout."""
        if self._settings.idle_timeout is None:
            return []
        now = time.monotonic() if now is None else now
        idle = [s.key for s in self.sessions() if s.idle_for(now) > self._settings.idle_timeout]
        for key in idle:
            self.deactivate(key.workspace_root, key.language_id)
        return idle

    def stop_all(self) -> dict[SessionKey, ShutdownReport]:
        """Shut down every session."""
        reports: dict[SessionKey, ShutdownReport] = {}
        for session in self.sessions():
            report = self.deactivate(session.workspace_root, session.language_id)
            if report is not None:
                reports[session.key] = report
        return reports

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_session(self, workspace_root: str | os.PathLike[str], language_id: str) -> WorkspaceSession | None:
        with self._lock:
            return self._sessions.get(SessionKey(os.path.abspath(workspace_root), language_id))

    def sessions(self) -> list[WorkspaceSession]:
        with self._lock:
            return list(self._sessions.values())

    def get_status(self) -> dict[str, Any]:
        """Get status of all sessions."""
        return {
            "configured_languages": self._registry.languages(),
            "configured_extensions": self._registry.extensions(),
            "sessions": [session.status() for session in self.sessions()],
        }
