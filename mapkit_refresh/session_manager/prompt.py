"""Interactive terminal prompts for credentials and the 2FA code."""

from __future__ import annotations

import asyncio
from typing import Optional

import click


def prompt_credentials(username: str = "", password: str = "") -> tuple[str, str]:
    """Ask for whichever of username / password was not supplied."""
    if username:
        click.echo(f"Apple ID: {username}", err=True)
    else:
        username = click.prompt("Apple ID", err=True).strip()

    if password:
        click.echo(f"Password: {'*' * len(password)}", err=True)
    else:
        password = click.prompt("Password (hidden)", hide_input=True, err=True)

    return username, password


async def prompt_verification_code() -> Optional[str]:
    """Read a 2FA code from the terminal without blocking the event loop.

    Returns None if the operator aborts (Ctrl+C / EOF).
    """
    click.echo("", err=True)
    click.echo("Two-factor authentication required.", err=True)
    try:
        code = await asyncio.to_thread(click.prompt, "Verification code", err=True)
    except click.Abort:
        return None
    return code.strip()
