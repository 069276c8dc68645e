"""
bankusage CLI — command-line interface.

Usage:
    bankusage login
    bankusage status
    bankusage token
    bankusage logout
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from bankusage import __version__
from bankusage.app import BankUsage
from bankusage.errors import AuthError, BankUsageError, CallbackTimeoutError, ConfigError
from bankusage.models.user import User

T = TypeVar("T")

app = typer.Typer(
    name="bankusage",
    help="bankusage — track your monthly bank usage",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_config_option = typer.Option(
    "bankusage.yaml",
    "--config",
    "-c",
    help="Path to config file",
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]bankusage[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """bankusage — sign in with Google and track your monthly bank usage."""
    load_dotenv()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _build_app(config: str) -> BankUsage:
    config_path = config if Path(config).exists() else None
    return BankUsage.from_config(config_path)


def _run(config: str, action: Callable[[BankUsage], Awaitable[T]]) -> T:
    """Build the app, run one async action, and map errors to exit codes."""
    try:
        bank = _build_app(config)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2) from e

    _setup_logging(bank.config.log_level)

    async def _go() -> T:
        try:
            return await action(bank)
        finally:
            await bank.close()

    try:
        return asyncio.run(_go())
    except CallbackTimeoutError as e:
        console.print(f"[red]Login timed out:[/red] {e}. Run [bold]bankusage login[/bold] to try again.")
        raise typer.Exit(1) from e
    except AuthError as e:
        console.print(f"[red]Error:[/red] {e}")
        detail = _provider_detail(e)
        if detail:
            console.print(f"[dim]Provider said:[/dim] {escape(detail)}")
        raise typer.Exit(1) from e
    except BankUsageError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _provider_detail(error: AuthError, limit: int = 200) -> str | None:
    """Short, printable summary of the provider's error body."""
    if not error.body:
        return None
    detail = error.body.strip()
    try:
        data = json.loads(detail)
    except ValueError:
        data = None
    if isinstance(data, dict) and (data.get("error") or data.get("error_description")):
        detail = ": ".join(str(data[k]) for k in ("error", "error_description") if data.get(k))
    detail = " ".join(detail.split())
    return detail[:limit] + "..." if len(detail) > limit else detail


def _display_user(user: User) -> None:
    table = Table(title="Signed In", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Name", user.full_name)
    table.add_row("Email", user.email)
    table.add_row("User ID", user.id)
    console.print(table)


def _show_authorization_url(url: str) -> None:
    console.print("If the browser doesn't open, visit:")
    console.print(url, soft_wrap=True, markup=False, highlight=False)


@app.command()
def login(config: str = _config_option) -> None:
    """Sign in with Google in your browser."""
    console.print(Panel.fit(
        "[bold blue]bankusage[/bold blue] — Google Login",
        subtitle=f"v{__version__}",
    ))
    console.print("Opening your browser to sign in. Waiting for authentication...")

    user = _run(config, lambda bank: bank.login(on_authorization_url=_show_authorization_url))

    console.print(f"[green]Login successful! Welcome, {user.full_name}![/green]")
    _display_user(user)


@app.command()
def status(config: str = _config_option) -> None:
    """Restore the saved session and show who is signed in."""
    user = _run(config, lambda bank: bank.startup())

    if user is None:
        console.print("[yellow]Not logged in.[/yellow] Run [bold]bankusage login[/bold] to sign in.")
        raise typer.Exit(1)
    _display_user(user)


@app.command()
def token(config: str = _config_option) -> None:
    """Print a valid access token, refreshing it if needed."""
    access_token = _run(config, lambda bank: bank.get_access_token())

    if access_token is None:
        console.print("[yellow]No valid session.[/yellow] Run [bold]bankusage login[/bold] to sign in.")
        raise typer.Exit(1)
    typer.echo(access_token)


@app.command()
def logout(config: str = _config_option) -> None:
    """Forget the saved session."""
    _run(config, lambda bank: bank.logout())
    console.print("Logged out successfully!")


if __name__ == "__main__":
    app()
