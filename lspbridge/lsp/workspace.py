"""Workspace provider: find the project root for an opened file."""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from lspbridge.constants import DEFAULT_PROJECT_MARKERS


class WorkspaceProvider:
    """Locates project roots by walking up to a marker file.

    The nearest ancestor directory holding any of the markers wins. A file
    with no such ancestor up to the filesystem root has no project root.
    """

    def __init__(self, markers: Iterable[str] = DEFAULT_PROJECT_MARKERS) -> None:
        self._markers = tuple(markers)

    @property
    def markers(self) -> tuple[str, ...]:
        return self._markers

    def find_project_root(self, file_path: str | os.PathLike[str], markers: Iterable[str] | None = None) -> Path | None:
        """Return the nearest ancestor containing a marker, or None."""
        names = tuple(markers) if markers is not None else self._markers
        start = Path(os.path.abspath(file_path))
        directory = start if start.is_dir() else start.parent
        for candidate in (directory, *directory.parents):
            if any((candidate / name).is_file() for name in names):
                return candidate
        return None

    def has_marker(self, root: str | os.PathLike[str], markers: Iterable[str] | None = None) -> bool:
        """Whether ``root`` still holds one of the markers."""
        names = tuple(markers) if markers is not None else self._markers
        return any((Path(root) / name).is_file() for name in names)


def file_extension(file_path: str | os.PathLike[str]) -> str:
    return Path(file_path).suffix
