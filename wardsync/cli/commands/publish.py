"""``wardsync publish`` — publish one fact by hand (operations, smoke tests)."""

from __future__ import annotations

import asyncio
import json

import typer
from rich.console import Console

from wardsync.bridge.transport import AmqpTransport
from wardsync.config import MessagingConfig, config
from wardsync.core.publisher import EventPublisher
from wardsync.core.supervisor import ConnectionSupervisor
from wardsync.models.topology import ExchangeKind, ExchangeSpec, Topology

console = Console()


async def _publish(
    settings: MessagingConfig,
    event_type: str,
    payload: dict,
    correlation_id: str | None,
    timeout: float,
) -> bool:
    supervisor = ConnectionSupervisor(AmqpTransport(), settings.rabbitmq_url, max_attempts=1)
    supervisor.add_topology(
        Topology(
            exchanges=(
                ExchangeSpec(name=settings.events_exchange, kind=ExchangeKind.TOPIC),
                ExchangeSpec(name=settings.audit_exchange, kind=ExchangeKind.DIRECT),
            )
        )
    )
    await supervisor.start()
    try:
        if supervisor.gave_up or not await supervisor.wait_until_ready(timeout):
            console.print(f"[red]Broker unavailable at {settings.masked_rabbitmq_url}[/red]")
            return False
        publisher = EventPublisher.from_config(supervisor, settings)
        return await publisher.publish_event(event_type, payload, correlation_id)
    finally:
        await supervisor.close()


def publish_cmd(
    event_type: str = typer.Argument(..., help="Fact routing key, e.g. patient.updated."),
    payload: str = typer.Argument(..., help="Payload as a JSON object."),
    source: str = typer.Option(None, "--source", help="Emitting service name."),
    correlation_id: str = typer.Option(None, "--correlation-id", help="Causal chain id."),
    url: str = typer.Option(None, "--url", help="Broker URL."),
    timeout: float = typer.Option(10.0, "--timeout", help="Seconds to wait for the broker."),
) -> None:
    """Wrap PAYLOAD in an envelope and publish it as EVENT_TYPE."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        console.print(f"[red]Payload is not valid JSON:[/red] {exc}")
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object.[/red]")
        raise typer.Exit(code=2)

    update: dict[str, object] = {}
    if source:
        update["service_name"] = source
    if url:
        update["rabbitmq_url"] = url
    settings = config.model_copy(update=update)

    ok = asyncio.run(_publish(settings, event_type, data, correlation_id, timeout))
    if not ok:
        console.print(f"[bold red]Not published:[/bold red] {event_type}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]Published[/bold green] {event_type}")
