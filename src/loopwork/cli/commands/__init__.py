"""CLI command modules for loopwork."""

from __future__ import annotations

import typer

from . import gates, run, runs


def register_commands(app: typer.Typer) -> None:
    """Attach every command and sub-app to *app*."""
    app.command("start")(run.start)
    app.command("do")(run.do)
    app.command("status")(run.status)
    app.command("recover")(run.recover)
    app.command("directives")(run.usage)
    app.add_typer(gates.app, name="gates")
    app.add_typer(runs.app, name="runs")


__all__ = ["register_commands"]
