"""``wardsync demo`` — end-to-end cascades with an in-process broker.

Starts clinical-service, appointment-service and user-service consumers
plus a publish-only patient-service against one ``LocalBroker``, each
consumer with its own throwaway SQLite database, then walks through:

1. a CHI number correction fanning out to every dependent table,
2. a partial rename (first name only) completed from an existing copy,
3. a new user replicated into the user directory,
4. a patient deactivation cancelling pending appointments,
5. a malformed message dead-lettered after bounded redelivery,
6. a broker restart, followed by automatic reconnection.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from wardsync import schema
from wardsync.bridge.local_transport import LocalBroker
from wardsync.bridge.transport import OutboundMessage
from wardsync.config import MessagingConfig, config
from wardsync.runtime import MessagingRuntime

console = Console()

PATIENT_ID = "p1"
DOCTOR_ID = "u1"


async def _seed(clinical: AsyncEngine, appointments: AsyncEngine) -> None:
    async with clinical.begin() as conn:
        await conn.execute(
            insert(schema.encounters),
            [{"id": "e1", "patient_id": PATIENT_ID, "patient_chi": "OLDCHI456", "status": "admitted"}],
        )
        await conn.execute(
            insert(schema.emergency_visits),
            [
                {
                    "id": "v1",
                    "patient_id": PATIENT_ID,
                    "patient_chi": "OLDCHI456",
                    "attending_doctor_id": DOCTOR_ID,
                    "attending_doctor_name": "Jane Doe",
                }
            ],
        )
        await conn.execute(
            insert(schema.clinical_notes),
            [{"id": "n1", "patient_id": PATIENT_ID, "author_id": DOCTOR_ID, "author_name": "Jane Doe"}],
        )
    async with appointments.begin() as conn:
        await conn.execute(
            insert(schema.appointments),
            [
                {
                    "id": "a1",
                    "patient_id": PATIENT_ID,
                    "patient_name": "John Smith",
                    "patient_chi": "OLDCHI456",
                    "doctor_id": DOCTOR_ID,
                    "doctor_name": "Jane Doe",
                    "status": "scheduled",
                },
                {
                    "id": "a2",
                    "patient_id": PATIENT_ID,
                    "patient_name": "John Smith",
                    "patient_chi": "OLDCHI456",
                    "doctor_id": DOCTOR_ID,
                    "doctor_name": "Jane Doe",
                    "status": "completed",
                },
            ],
        )
        await conn.execute(
            insert(schema.clinician_availability),
            [{"id": "c1", "clinician_id": DOCTOR_ID, "clinician_name": "Jane Doe", "status": "available"}],
        )


async def _show(engine: AsyncEngine, title: str, table, columns: list[str]) -> None:
    async with engine.connect() as conn:
        rows = (await conn.execute(select(*[table.c[c] for c in columns]))).all()
    out = Table(title=title)
    for name in columns:
        out.add_column(name)
    for row in rows:
        out.add_row(*["" if v is None else str(v) for v in row])
    console.print(out)


def _step(title: str) -> None:
    console.print()
    console.print(f"[cyan]>>>[/cyan] [bold]{title}[/bold]")


async def _run_demo(workdir: Path, reconnect_delay: float, delivery_limit: int) -> dict[str, dict]:
    broker = LocalBroker()
    engines = {
        name: create_async_engine(f"sqlite+aiosqlite:///{workdir / (name + '.db')}")
        for name in ("clinical", "appointments", "users")
    }
    for engine in engines.values():
        await schema.create_schema(engine)
    await _seed(engines["clinical"], engines["appointments"])

    def settings(service: str) -> MessagingConfig:
        return config.model_copy(
            update={
                "service_name": service,
                "reconnect_delay_seconds": reconnect_delay,
                "delivery_limit": delivery_limit,
            }
        )

    runtimes = {
        "clinical-service": MessagingRuntime(
            settings("clinical-service"),
            transport=broker,
            engine=engines["clinical"],
            profile="clinical-service",
        ),
        "appointment-service": MessagingRuntime(
            settings("appointment-service"),
            transport=broker,
            engine=engines["appointments"],
            profile="appointment-service",
        ),
        "user-service": MessagingRuntime(
            settings("user-service"),
            transport=broker,
            engine=engines["users"],
            profile="user-service",
        ),
    }
    patients = MessagingRuntime(settings("patient-service"), transport=broker)
    identity = MessagingRuntime(settings("auth-service"), transport=broker)

    try:
        for runtime in [*runtimes.values(), patients, identity]:
            await runtime.start()
        console.print(f"[green]{len(broker.sessions)} services connected[/green]")

        _step("patient.updated: CHI number corrected")
        await patients.publisher.publish_patient_updated(
            {
                "patientId": PATIENT_ID,
                "chiNumber": "NEWCHI123",
                "changes": {"chiNumber": {"old": "OLDCHI456", "new": "NEWCHI123"}},
            }
        )
        await broker.drain()
        await _show(engines["clinical"], "clinical: encounters", schema.encounters, ["id", "patient_chi"])
        await _show(
            engines["appointments"],
            "appointments",
            schema.appointments,
            ["id", "patient_chi", "status"],
        )

        _step("user.updated: first name only (Jane -> Janet)")
        await identity.publisher.publish_user_updated(
            {"userId": DOCTOR_ID, "changes": {"firstName": {"old": "Jane", "new": "Janet"}}}
        )
        await broker.drain()
        await _show(
            engines["clinical"],
            "clinical: clinical_notes",
            schema.clinical_notes,
            ["id", "author_name"],
        )
        await _show(
            engines["appointments"],
            "appointments",
            schema.appointments,
            ["id", "doctor_name"],
        )

        _step("user.created: replicated into the user directory")
        await identity.publisher.publish_user_created(
            {
                "userId": "u2",
                "email": "r.brown@example.org",
                "firstName": "Robert",
                "lastName": "Brown",
                "role": "nurse",
            }
        )
        await broker.drain()
        await _show(engines["users"], "users", schema.users, ["id", "email", "role", "is_active"])

        _step("patient.deactivated: pending appointments cancelled")
        await patients.publisher.publish_patient_deactivated({"patientId": PATIENT_ID})
        await broker.drain()
        await _show(
            engines["appointments"],
            "appointments",
            schema.appointments,
            ["id", "status", "notes"],
        )

        _step(f"malformed patient.updated: dead-lettered after {delivery_limit} redeliveries")
        await patients.supervisor.publish(
            config.events_exchange,
            "patient.updated",
            OutboundMessage(body=b"{not json", message_id="garbage-1"),
        )
        await broker.drain()
        for service in ("clinical-service", "appointment-service"):
            console.print(f"  {service}.dead: {broker.queue_depth(service + '.dead')} message(s)")

        _step("broker restart: connections dropped")
        broker.drop_connections()
        for runtime in runtimes.values():
            await runtime.supervisor.wait_until_ready(timeout=reconnect_delay * 20 + 5)
        console.print(
            "  "
            + ", ".join(
                f"{name}={rt.supervisor.state.value}" for name, rt in runtimes.items()
            )
        )

        return {name: rt.health() for name, rt in runtimes.items()}
    finally:
        for runtime in [*runtimes.values(), patients, identity]:
            await runtime.stop()
        for engine in engines.values():
            await engine.dispose()


def demo_cmd(
    reconnect_delay: float = typer.Option(
        0.2, "--reconnect-delay", help="Seconds between reconnect attempts."
    ),
    delivery_limit: int = typer.Option(
        3, "--delivery-limit", help="Redeliveries before a message is dead-lettered."
    ),
) -> None:
    """Run every cascade end to end against an in-process broker."""
    console.print()
    console.print(
        Panel(
            "[bold]wardsync demo[/bold]\n\n"
            "Three consuming services, two publishers, one in-process broker.\n"
            "Each consumer keeps its own SQLite database.",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    with tempfile.TemporaryDirectory(prefix="wardsync-demo-") as tmp:
        health = asyncio.run(_run_demo(Path(tmp), reconnect_delay, delivery_limit))

    summary = Table(title="Consumer health")
    summary.add_column("Service", style="cyan")
    summary.add_column("State")
    summary.add_column("Received", justify="right")
    summary.add_column("Acked", justify="right")
    summary.add_column("Nacked", justify="right")
    summary.add_column("Malformed", justify="right")
    for name, h in health.items():
        summary.add_row(
            name,
            h["state"],
            str(h["received"]),
            str(h["acked"]),
            str(h["nacked"]),
            str(h["malformed"]),
        )
    console.print()
    console.print(summary)
    console.print(Panel("[bold green]Demo Complete![/bold green]", border_style="green"))
