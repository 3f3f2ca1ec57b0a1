"""Tests for the shutdown/exit handshake."""

import pytest

from lspbridge.lsp.session import WorkspaceSession
from lspbridge.lsp.supervisor import ServerState
from lspbridge.types.errors import SessionShuttingDownError

from .conftest import read_log, wait_for


@pytest.fixture
def start_session(fake_server, fast_settings, tmp_path):
    def _start(mode="normal", **server_kwargs):
        session = WorkspaceSession(tmp_path, "gleam", fake_server(mode, **server_kwargs), settings=fast_settings)
        session.start()
        return session
    return _start


class TestShutdown:
    def test_graceful_shutdown_order(self, start_session, server_log):
        session = start_session()
        report = session.shutdown()

        assert report.acknowledged
        assert report.exited
        assert not report.killed
        assert report.returncode == 0
        assert session.state is ServerState.STOPPED

        log = read_log(server_log)
        assert log.index("shutdown") < log.index("exit")
        assert log[-1] == "exit"

    def test_pending_requests_are_abandoned(self, start_session):
        session = start_session()
        handles = [session.send("test/hang") for _ in range(2)]
        report = session.shutdown()

        assert report.abandoned_requests == 2
        for handle in handles:
            assert isinstance(handle.exception(timeout=1), SessionShuttingDownError)

    def test_new_work_refused_after_shutdown(self, start_session):
        session = start_session()
        session.shutdown()
        with pytest.raises(SessionShuttingDownError):
            session.send("test/echo")
        with pytest.raises(SessionShuttingDownError):
            session.notify("textDocument/didOpen")

    def test_server_ignoring_exit_is_killed(self, start_session, server_log):
        session = start_session("ignore-exit")
        report = session.shutdown()

        assert report.acknowledged
        assert not report.exited
        assert report.killed
        assert not session.supervisor.is_alive()
        assert "exit" in read_log(server_log)

    def test_unanswered_shutdown_still_sends_exit(self, start_session, server_log):
        session = start_session("ignore-shutdown", shutdown_timeout=0.3)
        report = session.shutdown()

        assert not report.acknowledged
        assert report.killed
        log = read_log(server_log)
        assert log.index("shutdown") < log.index("exit")

    def test_shutdown_is_idempotent(self, start_session):
        session = start_session()
        session.shutdown()
        again = session.shutdown()
        assert again.abandoned_requests == 0
        assert not again.acknowledged
        assert session.state is ServerState.STOPPED

    def test_shutdown_after_death(self, start_session):
        session = start_session("crash-after-init", max_restarts=0)
        assert wait_for(lambda: session.state is ServerState.DEAD)
        report = session.shutdown()
        assert not report.acknowledged
        assert not report.killed
