"""
lspbridge CLI.

Diagnostic commands around the bridge:
- resolve: which root, language and server would serve a file
- check: start the server for a file, print what it reports, shut it down
- languages: list the configured extension table
"""

from __future__ import annotations

import json
import sys
from dataclasses import asdict
from pathlib import Path

import click

from lspbridge import __version__
from lspbridge.config import BridgeConfig, load_config_file, load_default_config
from lspbridge.lsp.manager import WorkspaceSessionManager
from lspbridge.lsp.registry import Found, NotConfigured
from lspbridge.types.errors import BridgeError, ConfigurationError
from lspbridge.utils.logger import configure_logging


def _load(ctx: click.Context) -> BridgeConfig:
    config_path = ctx.obj.get("config_path")
    try:
        if config_path:
            return load_config_file(config_path)
        return load_default_config()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="lspbridge", message="lspbridge v%(version)s")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON server configuration (defaults to $LSPBRIDGE_CONFIG or the built-in gleam entry).",
)
@click.option("--log-level", default=None, help="Log level for stderr output.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """lspbridge - Language Server Process Bridge."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(log_level.upper() if log_level else None)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.pass_context
def resolve(ctx: click.Context, file: str) -> None:
    """Show which project root and server would handle FILE."""
    manager = WorkspaceSessionManager.from_config(_load(ctx))
    root, resolution = manager.resolve(file)
    match resolution:
        case NotConfigured(extension=ext):
            click.echo(f"No language server configured for '{ext or Path(file).name}'")
            sys.exit(1)
        case Found(language_id=language_id, server=server):
            click.echo(f"Language: {language_id}")
            click.echo(f"Command:  {' '.join(server.argv)}")
            if root is None:
                click.echo(f"Root:     none (no {', '.join(server.project_markers)} found)")
                sys.exit(1)
            click.echo(f"Root:     {root}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the session status as JSON.")
@click.pass_context
def check(ctx: click.Context, file: str, as_json: bool) -> None:
    """Start the server for FILE, report its capabilities, and shut it down."""
    manager = WorkspaceSessionManager.from_config(_load(ctx))
    try:
        session = manager.activate(file)
    except BridgeError as exc:
        click.echo(exc.get_formatted_message(), err=True)
        sys.exit(2)

    if session is None:
        click.echo(f"{file} is not served by any configured language server")
        sys.exit(1)

    try:
        status = session.status()
        status["capabilities"] = sorted(session.server_capabilities)
        status["server_info"] = session.server_info
    finally:
        report = manager.deactivate(session.workspace_root, session.language_id)

    if as_json:
        status["shutdown"] = asdict(report) if report is not None else None
        click.echo(json.dumps(status, indent=2, default=str))
        return

    click.echo(f"Server:       {session.server.name} (pid {status['pid']})")
    click.echo(f"Workspace:    {session.workspace_root}")
    click.echo(f"Capabilities: {', '.join(status['capabilities']) or 'none'}")
    if report is not None:
        click.echo(f"Shutdown:     acknowledged={report.acknowledged} killed={report.killed}")


@cli.command()
@click.pass_context
def languages(ctx: click.Context) -> None:
    """List configured extensions and the servers that handle them."""
    registry = _load(ctx).registry()
    if not len(registry):
        click.echo("No language servers configured")
        return
    for ext in registry.extensions():
        resolution = registry.resolve(ext)
        if isinstance(resolution, Found):
            click.echo(f"{ext:<12} {resolution.language_id:<12} {' '.join(resolution.server.argv)}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
