"""
Graceful termination handshake for one session.

Order of operations:
0. Fail outstanding requests with SessionShuttingDown; refuse new ones.
1. Send ``shutdown`` and wait for its response or a bounded timeout.
2. Send the ``exit`` notification.
3. Wait a bounded grace period for the process to exit on its own.
4. Force-kill it if it is still alive.
"""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

from lspbridge.constants import DEFAULT_EXIT_GRACE, DEFAULT_SHUTDOWN_TIMEOUT
from lspbridge.lsp.router import RequestRouter
from lspbridge.lsp.supervisor import ProcessSupervisor
from lspbridge.types.errors import BridgeError
from lspbridge.utils.logger import logger


@dataclass(frozen=True)
class ShutdownReport:
    """What happened during teardown."""

    abandoned_requests: int = 0
    acknowledged: bool = False
    """The server answered the shutdown request"""
    exited: bool = False
    """The process exited on its own within the grace period"""
    killed: bool = False
    returncode: int | None = None


class ShutdownCoordinator:
    """Drives the shutdown/exit handshake with a force-kill fallback."""

    def __init__(
        self,
        router: RequestRouter,
        supervisor: ProcessSupervisor,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        exit_grace: float = DEFAULT_EXIT_GRACE,
        name: str = "session",
    ) -> None:
        self._router = router
        self._supervisor = supervisor
        self._shutdown_timeout = shutdown_timeout
        self._exit_grace = exit_grace
        self._name = name

    def run(self) -> ShutdownReport:
        abandoned = self._router.close()
        self._supervisor.begin_stop()

        if not self._supervisor.is_alive():
            self._router.terminate()
            self._supervisor.stop()
            logger.debug("[{}] no live process to shut down", self._name)
            return ShutdownReport(abandoned_requests=abandoned, returncode=self._supervisor.returncode())

        acknowledged = False
        try:
            pending = self._router.send("shutdown", timeout=self._shutdown_timeout, lifecycle=True)
            pending.result(timeout=self._shutdown_timeout + 1.0)
            acknowledged = True
        except (BridgeError, FutureTimeoutError) as exc:
            logger.warning("[{}] shutdown request not acknowledged: {}", self._name, exc)

        try:
            self._router.notify("exit", lifecycle=True)
        except BridgeError as exc:
            logger.debug("[{}] could not send exit: {}", self._name, exc)
        self._router.terminate()

        exited = self._supervisor.wait_for_exit(self._exit_grace)
        killed = False
        if not exited:
            logger.warning("[{}] server still running {}s after exit; killing", self._name, self._exit_grace)
            self._supervisor.kill()
            killed = True

        self._supervisor.stop()
        report = ShutdownReport(
            abandoned_requests=abandoned,
            acknowledged=acknowledged,
            exited=exited,
            killed=killed,
            returncode=self._supervisor.returncode(),
        )
        logger.info(
            "[{}] stopped (acknowledged={}, killed={}, code={})",
            self._name, report.acknowledged, report.killed, report.returncode,
        )
        return report
