"""
Pytest configuration and shared fixtures for lspbridge tests.
"""

import sys
import time
from pathlib import Path

import pytest

from lspbridge.config import BridgeSettings
from lspbridge.lsp.registry import CapabilityRegistry, ServerCommand
from lspbridge.utils.logger import configure_logging

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_lsp_server.py"


def wait_for(predicate, timeout=10.0, interval=0.02):
    """Poll until predicate() is truthy; return its final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    return predicate()


def read_log(path):
    """Lines the fake server recorded, or [] before it wrote any."""
    p = Path(path)
    if not p.exists():
        return []
    return [line for line in p.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture(autouse=True)
def reset_logging():
    """Rebind the stderr sink after tests that reconfigure logging."""
    yield
    configure_logging("WARNING")


@pytest.fixture
def server_log(tmp_path):
    return tmp_path / "server.log"


@pytest.fixture
def fake_server(server_log):
    """Factory for a ServerCommand running the scripted fake server."""
    def _make(mode="normal", name="fake", **kwargs):
        return ServerCommand(
            name=name,
            command=sys.executable,
            args=(str(FAKE_SERVER), "--mode", mode, "--log", str(server_log)),
            **kwargs,
        )
    return _make


@pytest.fixture
def fast_settings():
    """Bridge settings with short timeouts and backoff for tests."""
    return BridgeSettings(
        launch_timeout=10.0,
        shutdown_timeout=2.0,
        exit_grace=1.0,
        max_restarts=3,
        restart_base_delay=0.01,
        restart_max_delay=0.05,
        stability_threshold=60.0,
    )


@pytest.fixture
def make_project(tmp_path):
    """Factory creating a gleam project directory with one source file."""
    def _make(name="app", files=("src/app.gleam",)):
        root = tmp_path / name
        root.mkdir()
        (root / "gleam.toml").write_text(f'name = "{name}"\n')
        for rel in files:
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("pub fn main() { Nil }\n")
        return root
    return _make


@pytest.fixture
def gleam_registry(fake_server):
    """Registry mapping .gleam to the fake server."""
    def _make(mode="normal", **kwargs):
        server = fake_server(mode, name="gleam", **kwargs)
        return CapabilityRegistry.from_servers([(server, {".gleam": "gleam"})])
    return _make
