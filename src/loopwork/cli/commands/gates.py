"""Gate management commands for the active run."""

from __future__ import annotations

from typing import Callable, Optional

import typer
from rich.table import Table
from typing_extensions import Annotated

from loopwork.cli.context import ProjectContext
from loopwork.cli.render import console, print_json
from loopwork.cli.commands.run import run_or_exit
from loopwork.errors import LoopworkError
from loopwork.record.models import ApprovalType
from loopwork.scheduler.engine import PhaseScheduler

app = typer.Typer(help="Inspect and configure gates of the active run")


def _with_scheduler(fn: Callable[[PhaseScheduler], object]) -> object:
    ctx = ProjectContext.discover()
    with ctx.session() as session:
        record = session.acquire(resume=True)
        if record is None:
            raise LoopworkError("No run in progress.")
        return fn(ctx.scheduler(ctx.load_definition(record=record), record))


def _target(gate: Optional[str], all_gates: bool) -> Optional[str]:
    if gate is None and not all_gates:
        raise LoopworkError("Name a gate or pass --all")
    if gate is not None and all_gates:
        raise LoopworkError("Pass either a gate or --all, not both")
    return gate


@app.command("list")
def list_command(json_output: Annotated[bool, typer.Option("--json", help="Output JSON")] = False) -> None:
    """List gates with their type, state and switches."""

    def _run() -> None:
        ctx = ProjectContext.discover()
        record = ctx.store().load()
        if record is None:
            raise LoopworkError("No run in progress.")
        if json_output:
            print_json({gate_id: gate.to_dict() for gate_id, gate in record.gates.items()})
            return
        table = Table(show_header=True, header_style="bold")
        for column in ("Gate", "Phase", "Type", "Status", "Enabled", "Required", "Attempts"):
            table.add_column(column)
        for gate in record.gates.values():
            kind = str(gate.effective_type)
            if gate.type_override:
                kind += f" (declared {gate.approval_type})"
            table.add_row(
                gate.gate_id,
                gate.phase,
                kind,
                str(gate.status),
                "yes" if gate.enabled else "no",
                "yes" if gate.required else "no",
                str(gate.attempts),
            )
        console.print(table)

    run_or_exit(_run)


def _switch(gate: Optional[str], all_gates: bool, enabled: bool) -> None:
    def _run() -> None:
        target = _target(gate, all_gates)
        changed = _with_scheduler(lambda s: s.set_gate_enabled(target, enabled))
        console.print(f"{'Enabled' if enabled else 'Disabled'}: {', '.join(changed)}")

    run_or_exit(_run)


@app.command("enable")
def enable_command(
    gate: Annotated[Optional[str], typer.Argument(help="Gate id")] = None,
    all_gates: Annotated[bool, typer.Option("--all", help="Apply to every gate")] = False,
) -> None:
    """Enable a gate (or all gates)."""
    _switch(gate, all_gates, True)


@app.command("disable")
def disable_command(
    gate: Annotated[Optional[str], typer.Argument(help="Gate id")] = None,
    all_gates: Annotated[bool, typer.Option("--all", help="Apply to every gate")] = False,
) -> None:
    """Disable a gate (or all gates); disabled gates pass without evaluation."""
    _switch(gate, all_gates, False)


@app.command("type")
def type_command(
    approval_type: Annotated[str, typer.Argument(help="human | auto | conditional | declared")],
    gate: Annotated[Optional[str], typer.Argument(help="Gate id")] = None,
    all_gates: Annotated[bool, typer.Option("--all", help="Apply to every gate")] = False,
) -> None:
    """Override a gate's approval type for this run ('declared' restores it)."""

    def _run() -> None:
        target = _target(gate, all_gates)
        value = approval_type.strip().lower()
        kind = None if value == "declared" else ApprovalType(value)
        changed = _with_scheduler(lambda s: s.set_gate_type(target, kind))
        console.print(f"{value}: {', '.join(changed)}")

    run_or_exit(_run)
