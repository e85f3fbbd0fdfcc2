"""Command line interface: mapkit-refresh open | logout | get | refresh | serve | mcp."""

from __future__ import annotations

import asyncio
import sys
from typing import Optional

import click

from .config import (
    APPLE_PASSWORD,
    APPLE_USERNAME,
    AUTH_CACHE,
    AUTH_STATE_FILE,
    OUTPUT_PATH,
    SERVER_HOST,
    SERVER_PORT,
    ConfigError,
    ensure_dirs,
    public_base_url,
    require_credentials,
)
from .constants import MAPS_TOKENS_URL
from .session_manager.operations import get_token, open_portal, refresh_token
from .session_manager.prompt import prompt_credentials
from .session_manager.session_store import SessionStore


def print_banner(purpose: str = "") -> None:
    click.echo("", err=True)
    click.echo("MapKit Token Refresh Tool", err=True)
    click.echo("=" * 39, err=True)
    if purpose:
        click.echo(purpose, err=True)
        click.echo("", err=True)


def resolve_credentials(username: Optional[str], password: Optional[str]) -> tuple[str, str]:
    """Options first, then environment, then an interactive prompt."""
    username = username or APPLE_USERNAME
    password = password or APPLE_PASSWORD
    if not (username and password):
        username, password = prompt_credentials(username, password)
    try:
        return require_credentials(username, password)
    except ConfigError as e:
        raise click.ClickException(str(e))


def _emit_token(token: Optional[str]) -> None:
    if not token:
        click.echo("Failed to obtain a token.", err=True)
        sys.exit(1)
    click.echo("", err=True)
    click.echo("MapKit token:", err=True)
    click.echo(token)


username_option = click.option("-u", "--username", default=None, help="Apple ID")
password_option = click.option("-p", "--password", default=None, help="Apple ID password")
headless_option = click.option("--headless", is_flag=True, default=False, help="Run without a browser window")
no_auth_cache_option = click.option(
    "--no-auth-cache", is_flag=True, default=False, help="Ignore the saved login state"
)


@click.group()
@click.version_option("1.0.0", prog_name="mapkit-refresh")
def cli() -> None:
    """Refresh Apple MapKit server tokens."""
    ensure_dirs()


@cli.command("open")
@headless_option
def open_command(headless: bool) -> None:
    """Open the MapKit token page in a browser."""
    print_banner(f"Target: {MAPS_TOKENS_URL}")
    asyncio.run(open_portal(headless=headless))


@cli.command()
def logout() -> None:
    """Forget the saved Apple ID login state."""
    if SessionStore(AUTH_STATE_FILE).clear():
        click.echo(f"Removed {AUTH_STATE_FILE}", err=True)
    else:
        click.echo("No saved login state.", err=True)


@cli.command("get")
@username_option
@password_option
@headless_option
@no_auth_cache_option
def get_command(username: Optional[str], password: Optional[str], headless: bool, no_auth_cache: bool) -> None:
    """Sign in and print the existing token."""
    print_banner("Sign in and read the existing MapKit token")
    username, password = resolve_credentials(username, password)
    token = asyncio.run(
        get_token(
            username,
            password,
            headless=headless,
            use_auth_cache=AUTH_CACHE and not no_auth_cache,
            manual_fallback=not headless,
        )
    )
    _emit_token(token)


@cli.command("refresh")
@username_option
@password_option
@headless_option
@no_auth_cache_option
def refresh_command(username: Optional[str], password: Optional[str], headless: bool, no_auth_cache: bool) -> None:
    """Sign in and create a new token."""
    print_banner("Sign in and create a new MapKit token")
    username, password = resolve_credentials(username, password)
    token = asyncio.run(
        refresh_token(
            username,
            password,
            headless=headless,
            use_auth_cache=AUTH_CACHE and not no_auth_cache,
            manual_fallback=not headless,
        )
    )
    _emit_token(token)


@cli.command()
@click.option("--host", default=SERVER_HOST, show_default=True)
@click.option("--port", default=SERVER_PORT, type=int, show_default=True)
@click.option("--headless/--headed", default=True, show_default=True)
@no_auth_cache_option
@click.option("--out", "output_path", default=OUTPUT_PATH or None, help="Also write each new token to this file")
def serve(host: str, port: int, headless: bool, no_auth_cache: bool, output_path: Optional[str]) -> None:
    """Run the HTTP service that refreshes tokens on request."""
    from aiohttp import web

    from .session_manager.manager import RefreshService, create_app

    print_banner("HTTP refresh service")
    try:
        username, password = require_credentials()
    except ConfigError as e:
        raise click.ClickException(str(e))

    base_url = public_base_url(port)
    service = RefreshService(
        username,
        password,
        headless=headless,
        use_auth_cache=AUTH_CACHE and not no_auth_cache,
        output_path=output_path,
        base_url=base_url,
    )
    click.echo(f"Verification page: {base_url}/refresh?taskId=<id>", err=True)
    web.run_app(create_app(service), host=host, port=port, print=None)


@cli.command()
def mcp() -> None:
    """Run the MCP server on stdio."""
    from .server import main as run_mcp

    run_mcp()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
