"""Command line entry point for lspbridge diagnostics."""

from .main import cli, main

__all__ = ["cli", "main"]
