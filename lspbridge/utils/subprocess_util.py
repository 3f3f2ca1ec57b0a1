import platform
import shlex
import subprocess
from collections.abc import Iterable


def subprocess_kwargs() -> dict:
    """
    Returns a dictionary of keyword arguments for spawning language servers, adding
    platform-specific flags that we want to use consistently.
    """
    kwargs: dict = {}
    if platform.system() == "Windows":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW  # type: ignore
    else:
        # keep terminal signals (Ctrl-C in the editor's shell) away from the server
        kwargs["start_new_session"] = True
    return kwargs


def format_command(argv: Iterable[str]) -> str:
    """Render an argument vector as a shell-quoted string for log lines."""
    return shlex.join(list(argv))
