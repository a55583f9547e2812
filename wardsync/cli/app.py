"""Main Typer application — imports and registers all CLI commands.

Entry point: ``wardsync`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer

from wardsync.cli.commands.consume import consume_cmd
from wardsync.cli.commands.demo import demo_cmd
from wardsync.cli.commands.profiles import profiles_cmd
from wardsync.cli.commands.publish import publish_cmd
from wardsync.cli.commands.topology import topology_cmd
from wardsync.config import config

app = typer.Typer(
    name="wardsync",
    help="wardsync: broker-driven consistency for denormalized clinical data.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _configure(
    log_level: str = typer.Option(
        config.log_level, "--log-level", "-l", help="Root log level (DEBUG, INFO, ...)."
    ),
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


# Register subcommands
app.command(name="consume", help="Run a service's consumers until interrupted.")(consume_cmd)
app.command(name="topology", help="Show the exchanges, queues and bindings a service declares.")(
    topology_cmd
)
app.command(name="publish", help="Publish one fact to the broker.")(publish_cmd)
app.command(name="demo", help="Run an in-process end-to-end cascade demo.")(demo_cmd)
app.command(name="profiles", help="List service profiles and the copies they maintain.")(
    profiles_cmd
)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
