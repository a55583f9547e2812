"""wardsync CLI — Typer-based command-line interface.

Provides the ``wardsync`` command with subcommands for running a consumer,
inspecting topology and profiles, publishing a fact by hand, and running an
in-process demo.

All output uses Rich for formatted terminal display.
"""
