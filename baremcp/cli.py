"""CLI entry point for BareMCP."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .config import Settings, load_settings
from .errors import ConfigError
from .output import OutputHandler
from .server import run_server
from .session import SessionManager

logger = logging.getLogger("baremcp")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _raise_verbosity(level: int) -> None:
    """Lower the root log threshold to at least the given level."""
    root = logging.getLogger()
    if root.level > level:
        root.setLevel(level)


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """BareMCP - MCP server for BareCommerceCore store management."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Logs go to stderr; stdout carries the MCP protocol when serving
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Load settings from context, exiting on configuration errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        settings = load_settings(ctx.obj["env_path"])
    except ConfigError as e:
        output.error(e, help_text="Fix the environment configuration and try again.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error

    if settings.debug:
        _raise_verbosity(logging.DEBUG)
    return settings


def _run(ctx: click.Context, operation: Any) -> dict[str, Any]:
    output: OutputHandler = ctx.obj["output"]
    try:
        return asyncio.run(operation)
    except Exception as e:
        output.error(e)
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server on stdio."""
    settings = get_settings(ctx)
    _raise_verbosity(logging.INFO)
    run_server(settings)


@main.command()
@click.option("--api-url", default=None, help="API URL for self-hosted BareCommerce instances")
@click.pass_context
def connect(ctx: click.Context, api_url: str | None) -> None:
    """Authorize this machine against a store via browser login."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)
    # The verification URL and user code are logged at INFO
    _raise_verbosity(logging.INFO)

    result = _run(ctx, SessionManager(settings).connect(api_url=api_url))
    output.success(result, human_message=result.get("message"))


@main.command()
@click.pass_context
def disconnect(ctx: click.Context) -> None:
    """Clear the saved credentials."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    result = _run(ctx, SessionManager(settings).disconnect())
    output.success(result, human_message=result.get("message"))


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the current connection status."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    result = _run(ctx, SessionManager(settings).status())

    if ctx.obj["json_mode"]:
        output.success(result)
        return

    store = result.get("store")
    if store:
        click.secho("\nConnected", fg="green", bold=True)
        click.echo(f"  Store: {store.get('name')} ({store.get('id')})")
        if store.get("domain"):
            click.echo(f"  Domain: {store['domain']}")
        click.echo(f"  Role: {result.get('role') or 'unknown'}")
        credentials = result.get("credentials")
        if credentials:
            click.echo(f"  Saved: {credentials['savedAt']} ({credentials['location']})")
    else:
        color = "yellow" if result.get("connected") else "red"
        click.secho(result.get("message", ""), fg=color)
        if result.get("hint"):
            click.echo(result["hint"])


@main.command()
@click.pass_context
def diagnostics(ctx: click.Context) -> None:
    """Print troubleshooting information."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    result = _run(ctx, SessionManager(settings).diagnostics())

    if ctx.obj["json_mode"]:
        output.success(result)
        return

    configuration = result["configuration"]
    connectivity = result["connectivity"]
    runtime = result["runtime"]

    click.secho(f"\nBareMCP v{result['version']}\n", bold=True)
    click.echo(f"  Python: {runtime['pythonVersion']} ({runtime['platform']}/{runtime['arch']})")
    click.echo(f"  API URL: {configuration['apiUrl']}")
    click.echo(f"  Authenticated: {configuration['authenticated']}")
    click.echo(f"  Credentials file: {configuration['credentialsFile']}")
    click.echo(f"  Credentials valid: {configuration['credentialsValid']}")

    if connectivity["apiReachable"]:
        click.secho(f"  API reachable ({connectivity['apiLatencyMs']}ms)", fg="green")
    else:
        detail = connectivity["apiError"] or "health check failed"
        click.secho(f"  API unreachable: {detail}", fg="red")
