"""Rich rendering helpers shared by CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from loopwork.record.models import Deliverable, ExecutionRecord, GateStatus, PhaseStatus, SkillStatus
from loopwork.scheduler.report import RunReport, StopReason

console = Console()

_STATUS_STYLE: dict[str, str] = {
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.IN_PROGRESS: "yellow",
    PhaseStatus.PENDING: "dim",
    SkillStatus.SKIPPED: "magenta",
    SkillStatus.FAILED: "red",
    GateStatus.PASSED: "green",
    GateStatus.SKIPPED: "magenta",
    GateStatus.REJECTED: "red",
}

_REASON_STYLE = {
    StopReason.COMPLETED: "green",
    StopReason.AWAITING_APPROVAL: "cyan",
    StopReason.GATE_CHECKS_FAILED: "red",
    StopReason.SKILL_FAILED: "red",
    StopReason.PAUSED: "yellow",
    StopReason.ABORTED: "yellow",
    StopReason.READY: "blue",
}


def print_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def render_report(report: RunReport) -> None:
    style = _REASON_STYLE.get(report.reason, "white")
    for skill in report.executed:
        console.print(f"  ran [bold]{skill}[/bold]")
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}")
    console.print(f"[{style}]{report.reason}[/{style}] {escape(report.message)}")
    if report.report_ref:
        console.print(f"  failure report: {report.report_ref}")
    if report.next_actions:
        console.print("  next: " + " | ".join(report.next_actions), style="dim")


def render_status(record: ExecutionRecord, summary: dict[str, Any]) -> None:
    header = (
        f"[bold]{record.loop_id}[/bold]  run {record.run_id}\n"
        f"status: {record.status}   phase: {record.current_phase}"
    )
    if record.iteration is not None:
        it = record.iteration
        header += f"\nitem: {it.current}  ({len(it.completed)} done, {len(it.remaining)} queued)"
    if record.abort_reason:
        header += f"\naborted: {escape(record.abort_reason)}"
    remote = summary.get("remote", {})
    header += f"\nremote: {remote.get('execution_id') or 'local-only'}"
    console.print(Panel(header, title="loopwork", expand=False))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Skills")
    table.add_column("Gate")
    for phase in record.phases:
        skills = ", ".join(f"{s.skill_id}:{_styled(s.status)}" for s in phase.skills) or "-"
        gate = record.gate_for_phase(phase.name)
        gate_text = "-"
        if gate is not None:
            gate_text = f"{gate.gate_id} ({gate.effective_type}) {_styled(gate.status)}"
            if not gate.enabled:
                gate_text += " [dim]disabled[/dim]"
        marker = "▶ " if phase.name == record.current_phase else ""
        table.add_row(f"{marker}{phase.name}", _styled(phase.status), skills, gate_text)
    console.print(table)

    counts = summary["skills"]
    console.print(
        f"phases {summary['phases']['completed']}/{summary['phases']['total']}  "
        f"skills {counts['completed']}/{counts['total']} (skipped {counts['skipped']}, failed {counts['failed']})"
    )
    if summary.get("awaiting_approval"):
        console.print(f"[cyan]Gate '{summary['awaiting_approval']}' awaits approval[/cyan]")
    if record.pre_run_context and not record.acknowledged_at:
        console.print("[yellow]Pre-run context not yet acknowledged; 'go' acknowledges it[/yellow]")


def render_pre_run_context(context: dict[str, Any]) -> None:
    lines = []
    for key in ("requiredDeliverables", "required_deliverables", "guarantees"):
        values = context.get(key)
        if isinstance(values, list) and values:
            lines.append(f"[bold]{key}[/bold]")
            lines.extend(f"  - {escape(str(value))}" for value in values)
    body = "\n".join(lines) if lines else escape(json.dumps(context, indent=2, sort_keys=True))
    console.print(Panel(body, title="Pre-run context", expand=False))


def render_deliverable(deliverable: Deliverable, root: Path) -> None:
    console.print(
        f"[bold]{deliverable.name}[/bold] v{deliverable.version} from {deliverable.producer}"
        f" ({'durable' if deliverable.durable else 'ephemeral'})"
    )
    if not deliverable.ref:
        console.print("  (no reference)")
        return
    path = Path(deliverable.ref)
    if not path.is_absolute():
        path = root / path
    console.print(f"  {path}")
    if path.is_file():
        try:
            console.print(path.read_text(encoding="utf-8"), markup=False, highlight=False)
        except UnicodeDecodeError:
            console.print("  (binary content not shown)")
