"""``wardsync profiles`` — list service profiles and what they write."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from wardsync.profiles import PROFILES
from wardsync.runtime import describing_engine

console = Console()


def profiles_cmd() -> None:
    """List every service profile, its facts, and the columns it maintains."""
    table = Table(title="Service Profiles")
    table.add_column("Profile", style="cyan")
    table.add_column("Fact", style="green")
    table.add_column("Writes")

    with describing_engine() as engine:
        for name, profile in PROFILES.items():
            first = True
            for executor in profile.executors(engine):
                table.add_row(
                    name if first else "",
                    executor.event_type.value,
                    "\n".join(executor.describe()) or "-",
                )
                first = False

    console.print(table)
