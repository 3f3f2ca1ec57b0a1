"""
Configuration loading.

Two layers:
- Server entries, in the editor-plugin layout: ``command``, ``args`` and
  ``extensionToLanguage`` plus optional launch details. Either one entry
  or a mapping of server name -> entry is accepted.
- ``BridgeSettings``: timeouts and restart policy shared by all sessions,
  read from an optional ``"bridge"`` section and ``LSPBRIDGE_*`` variables.

Configuration is read once at load time; nothing re-reads it per request.
"""

from __future__ import annotations

import inspect
import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Self

from lspbridge.constants import (
    DEFAULT_EXIT_GRACE,
    DEFAULT_LAUNCH_TIMEOUT,
    DEFAULT_MAX_RESTARTS,
    DEFAULT_PROJECT_MARKERS,
    DEFAULT_RESTART_BASE_DELAY,
    DEFAULT_RESTART_MAX_DELAY,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STABILITY_THRESHOLD,
)
from lspbridge.lsp.registry import CapabilityRegistry, ServerCommand
from lspbridge.lsp.supervisor import RestartPolicy
from lspbridge.types.errors import ConfigurationError

ENV_PREFIX = "LSPBRIDGE_"
CONFIG_PATH_ENV = "LSPBRIDGE_CONFIG"

DEFAULT_SERVERS: dict[str, Any] = {
    "gleam": {
        "command": "gleam",
        "args": ["lsp"],
        "extensionToLanguage": {".gleam": "gleam"},
        "projectMarkers": ["gleam.toml"],
    }
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


@dataclass
class BridgeSettings:
    """Timeouts and restart policy shared by every session."""

    launch_timeout: float = DEFAULT_LAUNCH_TIMEOUT
    """Seconds allowed for spawn + initialize handshake"""
    request_timeout: float | None = None
    """Default deadline for requests that set none; None disables it"""
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    exit_grace: float = DEFAULT_EXIT_GRACE
    max_restarts: int = DEFAULT_MAX_RESTARTS
    restart_base_delay: float = DEFAULT_RESTART_BASE_DELAY
    restart_max_delay: float = DEFAULT_RESTART_MAX_DELAY
    stability_threshold: float = DEFAULT_STABILITY_THRESHOLD
    idle_timeout: float | None = None
    """Sessions idle longer than this are closed by ``close_idle``"""

    @classmethod
    def from_dict(cls, env: Mapping[str, Any]) -> Self:
        params = inspect.signature(cls).parameters
        values = {_snake(k): v for k, v in env.items()}
        unknown = sorted(k for k in values if k not in params)
        if unknown:
            raise ConfigurationError(f"Unknown bridge settings: {', '.join(unknown)}")
        return cls(**values)

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> Self:
        """Return a copy with ``LSPBRIDGE_<FIELD>`` variables applied."""
        environ = os.environ if environ is None else environ
        updates: dict[str, Any] = {}
        for f in fields(self):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or not raw.strip():
                continue
            raw = raw.strip()
            if raw.lower() == "none" and f.name in ("request_timeout", "idle_timeout"):
                updates[f.name] = None
                continue
            try:
                updates[f.name] = int(raw) if f.name == "max_restarts" else float(raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}", original_error=exc
                ) from exc
        return type(self)(**{**self.__dict__, **updates}) if updates else self

    def restart_policy(self, max_restarts: int | None = None) -> RestartPolicy:
        return RestartPolicy(
            max_restarts=self.max_restarts if max_restarts is None else max_restarts,
            base_delay=self.restart_base_delay,
            max_delay=self.restart_max_delay,
            stability_threshold=self.stability_threshold,
        )


@dataclass
class BridgeConfig:
    """Loaded configuration: server entries plus shared settings."""

    servers: list[tuple[ServerCommand, dict[str, str]]] = field(default_factory=list)
    settings: BridgeSettings = field(default_factory=BridgeSettings)

    def registry(self) -> CapabilityRegistry:
        return CapabilityRegistry.from_servers(self.servers)

    def project_markers(self) -> tuple[str, ...]:
        markers: list[str] = []
        for server, _ in self.servers:
            for marker in server.project_markers:
                if marker not in markers:
                    markers.append(marker)
        return tuple(markers) or DEFAULT_PROJECT_MARKERS


def _require(entry: Mapping[str, Any], key: str, kind: type, name: str) -> Any:
    value = entry.get(key)
    if not isinstance(value, kind):
        raise ConfigurationError(
            f"Server '{name}': '{key}' must be a {kind.__name__}, got {type(value).__name__}"
        )
    return value


def parse_server(name: str, entry: Mapping[str, Any]) -> tuple[ServerCommand, dict[str, str]]:
    """Parse one server entry into a ServerCommand and its extension map."""
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"Server '{name}' must be a mapping")

    command = _require(entry, "command", str, name)
    if not command.strip():
        raise ConfigurationError(f"Server '{name}': 'command' must not be empty")
    args = entry.get("args", [])
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ConfigurationError(f"Server '{name}': 'args' must be a list of strings")
    ext_map = _require(entry, "extensionToLanguage", dict, name)
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in ext_map.items()):
        raise ConfigurationError(f"Server '{name}': 'extensionToLanguage' must map strings to strings")
    env = entry.get("env", {})
    if not isinstance(env, dict):
        raise ConfigurationError(f"Server '{name}': 'env' must be a mapping")
    markers = entry.get("projectMarkers", list(DEFAULT_PROJECT_MARKERS))
    if isinstance(markers, str):
        markers = [markers]
    if not isinstance(markers, list) or not all(isinstance(m, str) and m for m in markers):
        raise ConfigurationError(f"Server '{name}': 'projectMarkers' must be a string or a list of file names")
    restart_on_crash = entry.get("restartOnCrash", True)
    if not isinstance(restart_on_crash, bool):
        raise ConfigurationError(f"Server '{name}': 'restartOnCrash' must be true or false")

    def _optional_number(key: str) -> float | None:
        value = entry.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"Server '{name}': '{key}' must be a non-negative number")
        return float(value)

    # startupTimeout/shutdownTimeout are given in milliseconds by the plugin format.
    startup_ms = _optional_number("startupTimeout")
    shutdown_ms = _optional_number("shutdownTimeout")
    max_restarts = entry.get("maxRestarts")
    if max_restarts is not None and (isinstance(max_restarts, bool) or not isinstance(max_restarts, int)):
        raise ConfigurationError(f"Server '{name}': 'maxRestarts' must be an integer")

    server = ServerCommand(
        name=name,
        command=command,
        args=tuple(args),
        env={str(k): str(v) for k, v in env.items()},
        initialization_options=entry.get("initializationOptions"),
        settings=entry.get("settings"),
        project_markers=tuple(markers),
        startup_timeout=startup_ms / 1000 if startup_ms is not None else None,
        shutdown_timeout=shutdown_ms / 1000 if shutdown_ms is not None else None,
        max_restarts=max_restarts,
        restart_on_crash=restart_on_crash,
    )
    return server, dict(ext_map)


def load_config(data: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Build a BridgeConfig from a decoded mapping.

    Accepted layouts::

        {"command": "gleam", "args": ["lsp"], "extensionToLanguage": {...}}
        {"gleam": {...}, "other": {...}, "bridge": {...}}
        {"servers": {"gleam": {...}}, "bridge": {...}}
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration must be a mapping")

    bridge = data.get("bridge", {})
    if not isinstance(bridge, Mapping):
        raise ConfigurationError("'bridge' section must be a mapping")

    if "command" in data:
        entries = {data["command"]: {k: v for k, v in data.items() if k != "bridge"}}
    elif "servers" in data:
        entries = data["servers"]
        if not isinstance(entries, Mapping):
            raise ConfigurationError("'servers' must be a mapping")
    else:
        entries = {k: v for k, v in data.items() if k != "bridge"}

    servers = [parse_server(str(name), entry) for name, entry in entries.items()]
    settings = BridgeSettings.from_dict(bridge).with_env_overrides(environ)
    config = BridgeConfig(servers=servers, settings=settings)
    config.registry()  # reject conflicting extension claims at load time
    return config


def load_config_file(path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Load configuration from a JSON file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {p}", original_error=exc) from exc
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Cannot read config file {p}: {exc}", original_error=exc) from exc
    return load_config(data, environ)


def load_default_config(environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Config from ``LSPBRIDGE_CONFIG`` if set, else the built-in gleam entry."""
    env = os.environ if environ is None else environ
    path = env.get(CONFIG_PATH_ENV, "").strip()
    if path:
        return load_config_file(path, env)
    return load_config(DEFAULT_SERVERS, env)
