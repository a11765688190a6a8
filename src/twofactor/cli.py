"""CLI entry point for twofactor."""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console

console = Console()


@click.group()
def main() -> None:
    """twofactor — TOTP two-factor authentication service."""


@main.command()
def status() -> None:
    """Show configuration status (never prints secrets)."""
    from twofactor.config import settings

    console.print("[bold]twofactor status[/bold]")
    console.print(f"  Database: {settings.database_url.split('@')[-1]}")
    console.print(f"  Issuer: {settings.twofactor_issuer}")
    console.print(f"  Backup codes per set: {settings.backup_code_count}")
    if settings.twofactor_master_key:
        console.print("  Master key: [green]configured[/green]")
    else:
        console.print("  Master key: [red]not set[/red] (run `twofactor keygen`)")


@main.command()
def keygen() -> None:
    """Print a new base64 master key for TWOFACTOR_MASTER_KEY."""
    from twofactor.crypto import generate_key

    click.echo(generate_key())


@main.command()
def init_db() -> None:
    """Create or extend the users table with 2FA columns."""
    from twofactor.db import init_schema

    init_schema()
    console.print("[green]Schema ready[/green]")


@main.command()
@click.argument("user_id")
@click.argument("email")
@click.password_option()
@click.option("--verified/--unverified", default=True, help="Mark the email address as verified")
def add_user(user_id: str, email: str, password: str, verified: bool) -> None:
    """Create a user with a bcrypt-hashed password."""
    from twofactor.db import close_pool, init_pool
    from twofactor.store import PgCredentialStore

    async def _add() -> None:
        await init_pool(min_size=1, max_size=1)
        try:
            await PgCredentialStore().create_user(user_id, email, password, email_verified=verified)
        finally:
            await close_pool()

    asyncio.run(_add())
    console.print(f"[green]Created user {user_id}[/green] ({email})")


@main.command()
def db_check() -> None:
    """Verify database connectivity."""
    from twofactor.db import close_pool, execute_one, init_pool

    async def _check() -> None:
        await init_pool(min_size=1, max_size=1)
        row = await execute_one("SELECT 1 AS ok")
        if row and row["ok"] == 1:
            console.print("[green]Database connection OK[/green]")
        else:
            console.print("[red]Database check failed[/red]")
        await close_pool()

    asyncio.run(_check())


@main.command()
@click.argument("secret")
def code(secret: str) -> None:
    """Print the current TOTP code for SECRET (for testing enrollment)."""
    from twofactor.auth.totp import get_code

    click.echo(get_code(secret))


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Bind port")
def server(host: str | None, port: int | None) -> None:
    """Start the HTTP API."""
    import uvicorn

    from twofactor.api.app import app
    from twofactor.config import settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    host = host or settings.api_host
    port = port or settings.api_port
    console.print(f"Starting twofactor API on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
