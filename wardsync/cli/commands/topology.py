"""``wardsync topology`` — show what a service declares on every connect."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from wardsync.bridge.local_transport import LocalBroker
from wardsync.config import config
from wardsync.core.dispatcher import ConsumerDispatcher
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.profiles import PROFILES
from wardsync.runtime import describing_engine

console = Console()


def topology_cmd(
    profile: str = typer.Argument(..., help="Service profile."),
) -> None:
    """Print exchanges, queues (with arguments) and bindings for PROFILE."""
    if profile not in PROFILES:
        console.print(f"[red]Unknown profile:[/red] {profile}")
        raise typer.Exit(code=2)

    settings = config.model_copy(update={"service_name": profile})
    dispatcher = ConsumerDispatcher.from_config(
        ConnectionSupervisor.from_config(LocalBroker(), settings), settings
    )
    with describing_engine() as engine:
        for executor in PROFILES[profile].executors(engine):
            dispatcher.register_executor(executor)
    topology = dispatcher.topology()

    exchanges = Table(title=f"{profile}: exchanges")
    exchanges.add_column("Name", style="cyan")
    exchanges.add_column("Kind")
    exchanges.add_column("Durable", justify="center")
    for ex in topology.exchanges:
        exchanges.add_row(ex.name, ex.kind.value, "yes" if ex.durable else "no")

    queues = Table(title=f"{profile}: queues")
    queues.add_column("Name", style="cyan")
    queues.add_column("Arguments")
    for q in topology.queues:
        args = ", ".join(f"{k}={v}" for k, v in q.arguments().items()) or "-"
        queues.add_row(q.name, args)

    bindings = Table(title=f"{profile}: bindings")
    bindings.add_column("Queue", style="cyan")
    bindings.add_column("Exchange")
    bindings.add_column("Routing key", style="green")
    for b in topology.bindings:
        bindings.add_row(b.queue, b.exchange, b.routing_key)

    console.print(exchanges)
    console.print(queues)
    console.print(bindings)
