"""``wardsync consume`` — run one service's consumers until SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console

from wardsync.config import config
from wardsync.profiles import PROFILES
from wardsync.runtime import MessagingRuntime

console = Console()


def consume_cmd(
    profile: str = typer.Argument(..., help="Service profile to consume for."),
    url: str = typer.Option(None, "--url", help="Broker URL (defaults to WARDSYNC_RABBITMQ_URL)."),
    database_url: str = typer.Option(
        None, "--database-url", help="Cascade datastore (defaults to WARDSYNC_DATABASE_URL)."
    ),
) -> None:
    """Connect, declare topology, and apply facts for PROFILE until interrupted."""
    if profile not in PROFILES:
        console.print(f"[red]Unknown profile:[/red] {profile}")
        raise typer.Exit(code=2)

    update: dict[str, object] = {"service_name": profile}
    if url:
        update["rabbitmq_url"] = url
    if database_url:
        update["database_url"] = database_url
    settings = config.model_copy(update=update)

    console.print(
        f"[bold cyan]{profile}[/bold cyan] consuming from {settings.masked_rabbitmq_url}"
    )
    runtime = MessagingRuntime(settings, profile=profile)
    asyncio.run(runtime.run_until_signalled())
