"""
Language server process supervision.

Spawns the server binary, owns its stdin/stdout/stderr, detects exit, and
applies the restart policy:

    NotStarted -> Starting -> Ready
    Ready -> Crashed -> Restarting -> Ready
    Restarting -> Dead            (restart budget exhausted)
    any -> Stopped                (intentional teardown)

Each spawned process gets a generation number. Its reader thread only
delivers messages while its generation is current, so a stale reader can
never feed a restarted session. Writes are queued to a per-process writer
thread, so no caller (the reader included) ever blocks on a full stdin pipe.
"""

from __future__ import annotations

import os
import queue
import shutil
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from lspbridge.constants import (
    DEFAULT_MAX_RESTARTS,
    DEFAULT_RESTART_BASE_DELAY,
    DEFAULT_RESTART_MAX_DELAY,
    DEFAULT_STABILITY_THRESHOLD,
    READ_CHUNK_SIZE,
)
from lspbridge.lsp.framing import FrameDecoder, encode_message
from lspbridge.lsp.registry import ServerCommand
from lspbridge.types.errors import (
    BinaryNotFoundError,
    BridgeError,
    ErrorContext,
    LaunchFailedError,
    ProcessCrashedError,
    ProtocolError,
    ServerUnavailableError,
)
from lspbridge.utils.logger import logger, with_correlation_id
from lspbridge.utils.subprocess_util import format_command, subprocess_kwargs

ProcessFactory = Callable[..., subprocess.Popen]


class ServerState(str, Enum):
    """Lifecycle states of a supervised server process."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    DEAD = "dead"

    def __str__(self) -> str:
        return self.value


SETTLED_STATES = frozenset({ServerState.READY, ServerState.STOPPED, ServerState.DEAD})


@dataclass(frozen=True)
class RestartPolicy:
    """Exponential backoff with a bounded number of consecutive restarts."""

    max_restarts: int = DEFAULT_MAX_RESTARTS
    base_delay: float = DEFAULT_RESTART_BASE_DELAY
    max_delay: float = DEFAULT_RESTART_MAX_DELAY
    stability_threshold: float = DEFAULT_STABILITY_THRESHOLD
    """A Ready period at least this long resets the consecutive-failure count"""

    def delay_for(self, attempt: int) -> float:
        """Backoff before the ``attempt``-th consecutive restart (1-based)."""
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)


class _ProcessHandle:
    """One spawned process and the threads draining it."""

    def __init__(self, process: subprocess.Popen, generation: int) -> None:
        self.process = process
        self.generation = generation
        self.exited = threading.Event()
        self.returncode: int | None = None
        self.reader: threading.Thread | None = None
        self.writer: threading.Thread | None = None
        self.stderr_reader: threading.Thread | None = None
        # Framed payloads for the writer thread; None stops it.
        self.outbox: queue.SimpleQueue[bytes | None] = queue.SimpleQueue()

    @property
    def pid(self) -> int:
        return self.process.pid

    def alive(self) -> bool:
        return self.process.poll() is None


class ProcessSupervisor:
    """Owns the server process for one session.

    Args:
        server: What to launch.
        cwd: Working directory for the process (the workspace root).
        policy: Restart policy applied after crashes.
        on_message: Receives every decoded payload, on the reader thread.
        on_exit: Called once per process exit that was not requested, before
            any restart; the session fails its pending requests here.
        ready_check: Blocks until the freshly spawned process is usable
            (the initialize handshake); raises ``BridgeError`` if it is not.
        on_dead: Called once when the restart budget is exhausted.
        process_factory: ``subprocess.Popen`` or a test double.
        name: Label for log lines and thread names.
    """

    def __init__(
        self,
        server: ServerCommand,
        cwd: str | os.PathLike[str],
        policy: RestartPolicy,
        on_message: Callable[[Any], None],
        on_exit: Callable[[BridgeError], None],
        ready_check: Callable[[], None],
        on_dead: Callable[[], None] | None = None,
        process_factory: ProcessFactory = subprocess.Popen,
        name: str = "server",
    ) -> None:
        self._server = server
        self._cwd = os.fspath(cwd)
        self._policy = policy
        self._on_message = on_message
        self._on_exit = on_exit
        self._ready_check = ready_check
        self._on_dead = on_dead
        self._process_factory = process_factory
        self._name = name

        self._state = ServerState.NOT_STARTED
        self._state_changed = threading.Condition()
        self._stopping = threading.Event()
        self._current: _ProcessHandle | None = None
        self._generation = 0
        self._spawn_count = 0
        self._restart_count = 0
        self._consecutive_failures = 0
        self._ready_since: float | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def policy(self) -> RestartPolicy:
        return self._policy

    @property
    def pid(self) -> int | None:
        handle = self._current
        return handle.pid if handle is not None else None

    @property
    def spawn_count(self) -> int:
        return self._spawn_count

    @property
    def restart_count(self) -> int:
        """Restart attempts made over this supervisor's lifetime."""
        return self._restart_count

    @property
    def generation(self) -> int:
        return self._generation

    def is_alive(self) -> bool:
        handle = self._current
        return handle is not None and handle.alive()

    def wait_until_settled(self, timeout: float | None = None) -> ServerState:
        """Block until the state is Ready, Stopped or Dead (or timeout)."""
        with self._state_changed:
            self._state_changed.wait_for(lambda: self._state in SETTLED_STATES, timeout)
            return self._state

    def _set_state(self, state: ServerState) -> None:
        with self._state_changed:
            if self._state is state or self._state is ServerState.STOPPED:
                return
            logger.debug("[{}] {} -> {}", self._name, self._state, state)
            self._state = state
            self._state_changed.notify_all()

    # ------------------------------------------------------------------
    # Start / restart
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the process and run the readiness check.

        Failures here are terminal for this supervisor and consume no
        restart attempt.

        Raises:
            BinaryNotFoundError: The executable is not on PATH.
            LaunchFailedError: Spawning failed or the process never became ready.
        """
        if self._state is not ServerState.NOT_STARTED:
            raise RuntimeError(f"Supervisor {self._name} already started ({self._state})")
        self._set_state(ServerState.STARTING)

        try:
            handle = self._launch()
        except BridgeError:
            self._set_state(ServerState.STOPPED)
            raise

        try:
            self._ready_check()
        except BridgeError as exc:
            self._abandon(handle)
            self._set_state(ServerState.STOPPED)
            raise LaunchFailedError(
                f"{self._server.command} did not become ready: {exc}",
                context=ErrorContext(operation="start", additional_info={"command": self._server.argv}),
                original_error=exc,
            ) from exc

        if not self._mark_ready(handle):
            self._abandon(handle)
            self._set_state(ServerState.STOPPED)
            raise LaunchFailedError(
                f"{self._server.command} exited during startup (code {handle.returncode})",
                context=ErrorContext(operation="start", additional_info={"returncode": handle.returncode}),
            )
        logger.info("[{}] ready (pid {})", self._name, handle.pid)

    def _mark_ready(self, handle: _ProcessHandle) -> bool:
        with self._state_changed:
            if handle.exited.is_set() or self._stopping.is_set():
                return False
            self._ready_since = time.monotonic()
            logger.debug("[{}] {} -> {}", self._name, self._state, ServerState.READY)
            self._state = ServerState.READY
            self._state_changed.notify_all()
            return True

    def _launch(self) -> _ProcessHandle:
        env = {**os.environ, **self._server.env}
        executable = shutil.which(self._server.command, path=env.get("PATH"))
        context = ErrorContext(
            operation="launch",
            workspace_root=self._cwd,
            additional_info={"command": self._server.argv},
        )
        if executable is None:
            raise BinaryNotFoundError(self._server.command, context=context)

        argv = [executable, *self._server.args]
        try:
            process = self._process_factory(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self._cwd,
                env=env,
                bufsize=0,
                **subprocess_kwargs(),
            )
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(self._server.command, context=context, original_error=exc) from exc
        except OSError as exc:
            raise LaunchFailedError(
                f"Cannot spawn {format_command(argv)}: {exc}", context=context, original_error=exc
            ) from exc

        self._spawn_count += 1
        self._generation += 1
        handle = _ProcessHandle(process, self._generation)
        self._current = handle
        handle.reader = threading.Thread(
            target=self._read_loop, args=(handle,), name=f"{self._name}-reader-{handle.generation}", daemon=True
        )
        handle.writer = threading.Thread(
            target=self._write_loop, args=(handle,), name=f"{self._name}-writer-{handle.generation}", daemon=True
        )
        handle.stderr_reader = threading.Thread(
            target=self._drain_stderr, args=(handle,), name=f"{self._name}-stderr-{handle.generation}", daemon=True
        )
        handle.reader.start()
        handle.writer.start()
        handle.stderr_reader.start()
        logger.info("[{}] spawned {} (pid {}) in {}", self._name, format_command(argv), process.pid, self._cwd)
        return handle

    def _restart_loop(self) -> None:
        if (
            self._ready_since is not None
            and time.monotonic() - self._ready_since >= self._policy.stability_threshold
        ):
            self._consecutive_failures = 0

        while not self._stopping.is_set():
            if self._consecutive_failures >= self._policy.max_restarts:
                self._set_state(ServerState.DEAD)
                logger.error(
                    "[{}] giving up after {} restart attempt(s); session is dead",
                    self._name, self._consecutive_failures,
                )
                if self._on_dead is not None:
                    self._on_dead()
                return

            self._consecutive_failures += 1
            self._restart_count += 1
            delay = self._policy.delay_for(self._consecutive_failures)
            self._set_state(ServerState.RESTARTING)
            logger.info(
                "[{}] restart attempt {}/{} in {:.2f}s",
                self._name, self._consecutive_failures, self._policy.max_restarts, delay,
            )
            if self._stopping.wait(delay):
                return

            try:
                handle = self._launch()
            except BridgeError as exc:
                logger.warning("[{}] restart attempt failed to launch: {}", self._name, exc)
                continue

            try:
                self._ready_check()
            except BridgeError as exc:
                logger.warning("[{}] restarted server did not become ready: {}", self._name, exc)
                self._abandon(handle)
                continue

            if self._mark_ready(handle):
                logger.info("[{}] restarted (pid {})", self._name, handle.pid)
                return
            self._abandon(handle)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, payload: Any, lifecycle: bool = False) -> None:
        """Frame one payload and queue it for the current process.

        Never blocks on the pipe: the process's writer thread does the I/O,
        in queue order. Until the server is Ready only ``lifecycle`` traffic
        (the handshake, replies to server requests) is accepted.

        Raises:
            ServerUnavailableError: No live process, or it is not Ready and
                the payload is not lifecycle traffic.
        """
        with self._state_changed:
            handle = self._current
            state = self._state
            if (
                handle is None
                or handle.exited.is_set()
                or state in (ServerState.STOPPED, ServerState.DEAD)
                or (state is not ServerState.READY and not lifecycle)
            ):
                raise ServerUnavailableError(
                    f"{self._name}: no ready server process ({state})",
                    context=ErrorContext(operation="write"),
                )
            handle.outbox.put(encode_message(payload))

    def _write_loop(self, handle: _ProcessHandle) -> None:
        stdin = handle.process.stdin
        with with_correlation_id(self._name, operation="writer"):
            while (data := handle.outbox.get()) is not None:
                view = memoryview(data)
                try:
                    while view:
                        written = stdin.write(view)
                        view = view[written or 0:]
                    stdin.flush()
                except (OSError, ValueError) as exc:
                    if handle.exited.is_set() or self._stopping.is_set():
                        logger.debug("[{}] writer stopped: {}", self._name, exc)
                        return
                    # Broken input pipe on a live process counts as a crash.
                    logger.warning("[{}] write to pid {} failed: {}; killing it", self._name, handle.pid, exc)
                    self._abandon(handle)
                    return

    def _read_loop(self, handle: _ProcessHandle) -> None:
        with with_correlation_id(self._name, operation="reader"):
            decoder = FrameDecoder()
            stream = handle.process.stdout
            read = getattr(stream, "read1", None) or stream.read
            try:
                while True:
                    chunk = read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    decoder.feed(chunk)
                    self._deliver(decoder, handle)
            except (OSError, ValueError) as exc:
                logger.debug("[{}] reader stopped: {}", self._name, exc)
            finally:
                if decoder.buffered:
                    logger.debug("[{}] {} undecoded byte(s) at EOF", self._name, decoder.buffered)
                self._handle_exit(handle)

    def _deliver(self, decoder: FrameDecoder, handle: _ProcessHandle) -> None:
        while True:
            try:
                for payload in decoder.messages():
                    if handle is not self._current:
                        logger.debug("[{}] dropping message from stale generation {}", self._name, handle.generation)
                        continue
                    self._on_message(payload)
                return
            except ProtocolError as exc:
                logger.warning("[{}] discarded malformed message: {}", self._name, exc)

    def _drain_stderr(self, handle: _ProcessHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        try:
            for chunk in iter(lambda: stream.read(4096), b""):
                text = chunk.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("[{}] stderr: {}", self._name, text)
        except (OSError, ValueError) as exc:
            logger.debug("[{}] stderr reader stopped: {}", self._name, exc)

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    def _handle_exit(self, handle: _ProcessHandle) -> None:
        handle.returncode = handle.process.wait()
        handle.exited.set()
        self._close_pipes(handle)

        if handle is not self._current:
            return
        if self._stopping.is_set():
            logger.debug("[{}] exited with code {} after stop", self._name, handle.returncode)
            return

        with self._state_changed:
            state = self._state

        error = ProcessCrashedError(
            f"{self._server.command} (pid {handle.pid}) exited with code {handle.returncode}",
            returncode=handle.returncode,
            context=ErrorContext(operation="supervise", workspace_root=self._cwd),
        )
        if state is ServerState.READY:
            logger.warning("[{}] {}", self._name, error)
            self._set_state(ServerState.CRASHED)
        self._on_exit(error)

        if state is not ServerState.READY:
            # Starting/Restarting: the pending readiness check fails and the launcher decides.
            return
        if not self._server.restart_on_crash:
            self._set_state(ServerState.DEAD)
            if self._on_dead is not None:
                self._on_dead()
            return
        self._restart_loop()

    def _abandon(self, handle: _ProcessHandle) -> None:
        """Kill a process that never became ready."""
        if handle.alive():
            try:
                handle.process.kill()
            except OSError as exc:
                logger.debug("[{}] kill of pid {} failed: {}", self._name, handle.pid, exc)
        try:
            handle.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("[{}] pid {} did not die after kill", self._name, handle.pid)

    def _close_pipes(self, handle: _ProcessHandle) -> None:
        handle.outbox.put(None)
        for thread in (handle.writer, handle.stderr_reader):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=1.0)
        for stream in (handle.process.stdin, handle.process.stdout, handle.process.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as exc:
                logger.debug("[{}] closing pipe failed: {}", self._name, exc)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def begin_stop(self) -> None:
        """Mark the coming exit as intentional and cancel pending restarts."""
        self._stopping.set()
        with self._state_changed:
            self._state_changed.notify_all()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def wait_for_exit(self, timeout: float | None = None) -> bool:
        """Wait for the current process to exit; True if it did."""
        handle = self._current
        if handle is None:
            return True
        try:
            handle.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def returncode(self) -> int | None:
        handle = self._current
        return handle.process.poll() if handle is not None else None

    def kill(self) -> None:
        """Forcibly terminate the current process."""
        handle = self._current
        if handle is None or not handle.alive():
            return
        logger.warning("[{}] force-killing pid {}", self._name, handle.pid)
        self._abandon(handle)

    def stop(self, join_timeout: float = 2.0) -> None:
        """Ensure no process remains and move to Stopped.

        The polite handshake belongs to the shutdown coordinator; this is the
        final step and kills whatever is still running.
        """
        self.begin_stop()
        handle = self._current
        if handle is not None:
            if handle.alive():
                self._abandon(handle)
            if handle.reader is not None and handle.reader is not threading.current_thread():
                handle.reader.join(timeout=join_timeout)
        self._set_state(ServerState.STOPPED)
