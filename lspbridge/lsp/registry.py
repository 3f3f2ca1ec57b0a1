"""
Capability registry: which server handles which file extension.

Built once from configuration and read-only afterwards. ``resolve`` returns
one of a closed set of outcomes, ``Found`` or ``NotConfigured``, so callers
branch with ``match`` instead of probing strings.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from lspbridge.constants import DEFAULT_PROJECT_MARKERS
from lspbridge.types.errors import ConfigurationError


def normalize_extension(extension: str) -> str:
    """``"GLEAM"``, ``".gleam"`` and ``"gleam"`` all become ``".gleam"``."""
    ext = extension.strip().lower()
    if not ext:
        return ext
    return ext if ext.startswith(".") else f".{ext}"


@dataclass(frozen=True)
class ServerCommand:
    """How to launch and talk to one language server."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    initialization_options: object = None
    settings: object = None
    project_markers: tuple[str, ...] = DEFAULT_PROJECT_MARKERS
    startup_timeout: float | None = None
    shutdown_timeout: float | None = None
    max_restarts: int | None = None
    restart_on_crash: bool = True

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class ExtensionMapping:
    """One row of the extension table."""

    extension: str
    language_id: str
    server: ServerCommand


@dataclass(frozen=True)
class Found:
    language_id: str
    server: ServerCommand


@dataclass(frozen=True)
class NotConfigured:
    extension: str


Resolution = Found | NotConfigured


class CapabilityRegistry:
    """Extension -> (language id, server command) lookup."""

    def __init__(self, mappings: Iterable[ExtensionMapping] = ()) -> None:
        table: dict[str, ExtensionMapping] = {}
        for mapping in mappings:
            ext = normalize_extension(mapping.extension)
            if not ext:
                raise ConfigurationError(f"Empty extension for server '{mapping.server.name}'")
            existing = table.get(ext)
            if existing is not None and existing.server.name != mapping.server.name:
                raise ConfigurationError(
                    f"Extension '{ext}' claimed by both '{existing.server.name}' "
                    f"and '{mapping.server.name}'"
                )
            table[ext] = ExtensionMapping(ext, mapping.language_id, mapping.server)
        self._table = MappingProxyType(table)

    @classmethod
    def from_servers(cls, servers: Iterable[tuple[ServerCommand, Mapping[str, str]]]) -> CapabilityRegistry:
        """Build from (server, extensionToLanguage) pairs."""
        return cls(
            ExtensionMapping(ext, language_id, server)
            for server, ext_map in servers
            for ext, language_id in ext_map.items()
        )

    def resolve(self, extension: str) -> Resolution:
        mapping = self._table.get(normalize_extension(extension))
        if mapping is None:
            return NotConfigured(extension)
        return Found(mapping.language_id, mapping.server)

    def languages(self) -> list[str]:
        return sorted({m.language_id for m in self._table.values()})

    def extensions(self) -> list[str]:
        return sorted(self._table)

    def server_for_language(self, language_id: str) -> ServerCommand | None:
        for mapping in self._table.values():
            if mapping.language_id == language_id:
                return mapping.server
        return None

    def __len__(self) -> int:
        return len(self._table)
