"""Archived run commands."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import typer
from rich.table import Table
from typing_extensions import Annotated

from loopwork.archive.archival import DEFAULT_KEEP
from loopwork.cli.commands.run import run_or_exit
from loopwork.cli.context import ProjectContext
from loopwork.cli.render import console, print_json

app = typer.Typer(help="Query and prune archived runs")


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Invalid --since '{value}'. Use an ISO date such as 2026-01-31") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@app.command("list")
def list_command(
    loop: Annotated[Optional[str], typer.Option("--loop", help="Only runs of this loop")] = None,
    since: Annotated[Optional[str], typer.Option("--since", help="Only runs completed on/after this ISO date")] = None,
    limit: Annotated[Optional[int], typer.Option("--limit", help="Maximum number of runs")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """List archived runs, newest first."""

    def _run() -> None:
        service = ProjectContext.discover().archive_service()
        runs = service.query_runs(loop=loop, since=_parse_since(since), limit=limit)
        if json_output:
            print_json([{"path": str(r.path), **r.summary} for r in runs])
            return
        if not runs:
            console.print("No archived runs.")
            return
        table = Table(show_header=True, header_style="bold")
        for column in ("Loop", "Run", "Completed", "Outcome", "Path"):
            table.add_column(column)
        for run in runs:
            table.add_row(run.loop, run.run_id, run.completed_at, run.outcome, str(run.path))
        console.print(table)

    run_or_exit(_run)


@app.command("prune")
def prune_command(
    keep: Annotated[int, typer.Option("--keep", help="Number of recent runs to keep")] = DEFAULT_KEEP,
    loop: Annotated[Optional[str], typer.Option("--loop", help="Only prune runs of this loop")] = None,
) -> None:
    """Delete all but the most recent archived runs."""

    def _run() -> None:
        removed = ProjectContext.discover().archive_service().prune(keep=keep, loop=loop)
        console.print(f"Removed {len(removed)} archived run(s)")

    run_or_exit(_run)
