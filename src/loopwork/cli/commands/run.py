"""Run commands: start, do, status, recover."""

from __future__ import annotations

import signal
from contextlib import contextmanager
from typing import Iterator, List, Optional

import typer
from typing_extensions import Annotated

from loopwork.cli.context import ProjectContext, current_operator
from loopwork.cli.render import (
    console,
    print_json,
    render_deliverable,
    render_pre_run_context,
    render_report,
    render_status,
)
from loopwork.commands.interpreter import USAGE, CommandInterpreter, parse_directive
from loopwork.errors import CommandError, ConcurrentInvocation, LoopworkError, StateCorruption
from loopwork.scheduler.engine import PhaseScheduler
from loopwork.scheduler.report import StopReason


def run_or_exit(fn):
    """Run *fn*, turning engine errors into a red message and exit code 1."""
    try:
        return fn()
    except ConcurrentInvocation as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        typer.secho(
            "Use 'loopwork do go' to resume the active run, or 'loopwork start --restart' to set it aside.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        raise typer.Exit(1) from exc
    except StateCorruption as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        typer.secho("Run 'loopwork recover' to quarantine it and start fresh.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(1) from exc
    except CommandError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        if exc.usage:
            typer.echo(exc.usage, err=True)
        raise typer.Exit(1) from exc
    except (LoopworkError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc


@contextmanager
def pause_on_interrupt(scheduler: PhaseScheduler) -> Iterator[None]:
    """Map Ctrl-C to a checkpoint after the current skill."""

    def _handler(signum, frame) -> None:
        console.print("[yellow]Pause requested; finishing the current skill...[/yellow]")
        scheduler.request_pause()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # not on the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _parse_seeds(values: list[str]) -> dict[str, str | None]:
    seeds: dict[str, str | None] = {}
    for raw in values:
        name, sep, ref = raw.partition("=")
        if not name.strip():
            raise ValueError(f"Invalid --seed '{raw}'. Expected name=reference")
        seeds[name.strip()] = ref.strip() if sep and ref.strip() else None
    return seeds


def _print_archive(ctx: ProjectContext) -> None:
    for result in ctx.archived:
        console.print(f"[green]Archived to {result.path}[/green]")
        if result.committed:
            console.print("  durable deliverables committed")


def start(
    definition: Annotated[Optional[str], typer.Option("--definition", "-d", help="Loop definition file")] = None,
    item: Annotated[List[str], typer.Option("--item", help="Work item for the iteration queue (repeatable)")] = [],
    seed: Annotated[List[str], typer.Option("--seed", help="Seed deliverable name=reference (repeatable)")] = [],
    restart: Annotated[bool, typer.Option("--restart", help="Set an active run aside and start fresh")] = False,
    go: Annotated[bool, typer.Option("--go/--no-go", help="Run immediately after starting")] = True,
    json_output: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Start a new run of the loop defined in this directory."""

    def _run() -> None:
        ctx = ProjectContext.discover(create=True)
        loop = ctx.load_definition(definition)
        seeds = _parse_seeds(seed)
        with ctx.session() as session:
            session.acquire(restart=restart)
            scheduler = ctx.begin(loop, seeds=seeds, items=list(item) or None)
            record = scheduler.record
            report = None
            if go:
                with pause_on_interrupt(scheduler):
                    report = scheduler.run()

        if json_output:
            print_json(
                {
                    "run_id": record.run_id,
                    "loop": record.loop_id,
                    "pre_run_context": record.pre_run_context,
                    "report": report.to_dict() if report else None,
                    "archived": [str(r.path) for r in ctx.archived],
                }
            )
            return
        console.print(f"Started run [bold]{record.run_id}[/bold] of loop [bold]{record.loop_id}[/bold]")
        if record.pre_run_context:
            render_pre_run_context(record.pre_run_context)
        if report is not None:
            render_report(report)
        _print_archive(ctx)

    run_or_exit(_run)


def do(
    directive: Annotated[List[str], typer.Argument(help="Directive, e.g. go | approved | 'changes: more detail'")],
    json_output: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Apply an operator directive to the active run."""
    text = " ".join(directive)

    def _run() -> None:
        parsed = parse_directive(text)
        ctx = ProjectContext.discover()
        with ctx.session() as session:
            record = session.acquire(resume=True)
            if record is None:
                raise LoopworkError("No run in progress. Start one with 'loopwork start'.")
            loop = ctx.load_definition(record=record)
            scheduler = ctx.scheduler(loop, record)
            interpreter = CommandInterpreter(scheduler, operator=current_operator())
            with pause_on_interrupt(scheduler):
                result = interpreter.execute(parsed)

        if json_output:
            payload = result.to_dict()
            payload["archived"] = [str(r.path) for r in ctx.archived]
            print_json(payload)
            return
        if result.status is not None:
            render_status(scheduler.record, result.status)
        if result.deliverable is not None:
            render_deliverable(result.deliverable, ctx.root)
        if result.report is not None:
            render_report(result.report)
            if result.report.reason == StopReason.COMPLETED:
                _print_archive(ctx)

    run_or_exit(_run)


def status(
    json_output: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
) -> None:
    """Show progress of the current run (read-only)."""

    def _run() -> None:
        ctx = ProjectContext.discover()
        record = ctx.store().load()
        if record is None:
            if json_output:
                print_json({"run": None})
            else:
                console.print("No run in progress.")
            return
        loop = ctx.load_definition(record=record)
        try:
            summary = ctx.scheduler(loop, record).summary()
        finally:
            ctx.close()
        if json_output:
            print_json(summary)
            return
        render_status(record, summary)

    run_or_exit(_run)


def recover(
    abandon: Annotated[bool, typer.Option("--abandon", help="Also set aside a valid record")] = False,
) -> None:
    """Quarantine a corrupt execution record so the next start is a cold start."""

    def _run() -> None:
        ctx = ProjectContext.discover()
        store = ctx.store()
        try:
            record = store.load()
        except StateCorruption as exc:
            moved = store.set_aside("corrupt")
            console.print(f"[yellow]{exc.reason}[/yellow]")
            console.print(f"Corrupt record preserved at {moved}")
            return
        if record is None:
            console.print("No execution record present.")
            return
        if not abandon:
            console.print(f"Execution record for run {record.run_id} is valid; nothing to recover.")
            return
        moved = store.set_aside("abandoned")
        console.print(f"Run {record.run_id} set aside at {moved}")

    run_or_exit(_run)


def usage() -> None:
    """List the directive vocabulary accepted by 'loopwork do'."""
    typer.echo(USAGE)
