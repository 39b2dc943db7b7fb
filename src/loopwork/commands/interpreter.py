"""Operator directive vocabulary.

Input is parsed into a typed directive value first; only directives are
dispatched to the scheduler. Keywords are case-insensitive, while free
text (feedback, reasons) keeps its original case.

Vocabulary::

    go
    status
    approved
    changes: <feedback> [--target <phase>[/<skill>]]
    pause
    skip <skill> --reason <text>
    skip-gate <gate> --reason <text>
    show <deliverable>
    phase <name>
    abort [--reason <text>]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Union

from loopwork.errors import CommandError
from loopwork.record.models import Deliverable
from loopwork.scheduler.engine import PhaseScheduler
from loopwork.scheduler.report import RunReport

USAGE = """\
Directives (case-insensitive):
  go                                   proceed / retry
  status                               show progress
  approved                             pass the current gate
  changes: <feedback> [--target P[/S]] reject the gate and rework
  pause                                checkpoint after the current skill
  skip <skill> --reason <text>         mark a skill skipped
  skip-gate <gate> --reason <text>     force-pass a gate
  show <deliverable>                   display a deliverable
  phase <name>                         jump to a phase (recovery)
  abort [--reason <text>]              stop the run, keep it resumable"""


@dataclass(frozen=True)
class Go:
    pass


@dataclass(frozen=True)
class Status:
    pass


@dataclass(frozen=True)
class Approve:
    pass


@dataclass(frozen=True)
class RequestChanges:
    feedback: str
    target: str | None = None


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class SkipSkill:
    skill_id: str
    reason: str


@dataclass(frozen=True)
class SkipGate:
    gate_id: str
    reason: str


@dataclass(frozen=True)
class Show:
    name: str


@dataclass(frozen=True)
class JumpPhase:
    name: str


@dataclass(frozen=True)
class Abort:
    reason: str | None = None


Directive = Union[Go, Status, Approve, RequestChanges, Pause, SkipSkill, SkipGate, Show, JumpPhase, Abort]

_CHANGES_RE = re.compile(r"^changes\s*:(?P<body>.*)$", re.IGNORECASE | re.DOTALL)
_TARGET_RE = re.compile(r"\s+--target(?:=|\s+)(?P<target>\S+)\s*$", re.IGNORECASE)
_SKIP_RE = re.compile(
    r"^(?P<kind>skip-gate|skip)\s+(?P<ident>\S+)(?:\s+--reason(?:=|\s+)(?P<reason>.*))?$",
    re.IGNORECASE | re.DOTALL,
)
_ABORT_RE = re.compile(r"^abort(?:\s+--reason(?:=|\s+)(?P<reason>.*))?$", re.IGNORECASE | re.DOTALL)
_SINGLE_ARG_RE = re.compile(r"^(?P<kind>show|phase)\s+(?P<arg>\S+)$", re.IGNORECASE)

_BARE = {"go": Go, "status": Status, "approved": Approve, "pause": Pause}


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1].strip()
    return text


def parse_directive(text: str) -> Directive:
    """Parse one line of operator input.

    Raises:
        CommandError: Unknown keyword or missing argument; carries usage help.
    """
    line = text.strip()
    if not line:
        raise CommandError("Empty directive", USAGE)

    bare = _BARE.get(line.casefold())
    if bare is not None:
        return bare()

    match = _CHANGES_RE.match(line)
    if match:
        body = match.group("body")
        target = None
        target_match = _TARGET_RE.search(body)
        if target_match:
            target = target_match.group("target")
            body = body[: target_match.start()]
        feedback = _unquote(body)
        if not feedback:
            raise CommandError("'changes:' needs feedback text, e.g. 'changes: need more detail'", USAGE)
        return RequestChanges(feedback=feedback, target=target)

    match = _SKIP_RE.match(line)
    if match:
        kind = match.group("kind").casefold()
        reason = _unquote(match.group("reason") or "")
        if not reason:
            raise CommandError(f"'{kind}' requires --reason <text>", USAGE)
        if kind == "skip-gate":
            return SkipGate(gate_id=match.group("ident"), reason=reason)
        return SkipSkill(skill_id=match.group("ident"), reason=reason)

    match = _ABORT_RE.match(line)
    if match:
        return Abort(reason=_unquote(match.group("reason") or "") or None)

    match = _SINGLE_ARG_RE.match(line)
    if match:
        if match.group("kind").casefold() == "show":
            return Show(name=match.group("arg"))
        return JumpPhase(name=match.group("arg"))

    keyword = line.split()[0].casefold()
    if keyword in ("show", "phase"):
        raise CommandError(f"'{keyword}' takes exactly one argument", USAGE)
    raise CommandError(f"Unknown directive '{line.split()[0]}'", USAGE)


@dataclass
class CommandResult:
    directive: Directive
    report: RunReport | None = None
    status: dict[str, Any] | None = None
    deliverable: Deliverable | None = None
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "directive": type(self.directive).__name__,
            "report": self.report.to_dict() if self.report else None,
            "status": self.status,
            "deliverable": self.deliverable.to_dict() if self.deliverable else None,
            "messages": list(self.messages),
        }


class CommandInterpreter:
    """Dispatch parsed directives onto a :class:`PhaseScheduler`."""

    def __init__(self, scheduler: PhaseScheduler, operator: str = "operator") -> None:
        self.scheduler = scheduler
        self.operator = operator

    def handle(self, text: str) -> CommandResult:
        return self.execute(parse_directive(text))

    def execute(self, directive: Directive) -> CommandResult:
        scheduler = self.scheduler
        if isinstance(directive, Go):
            return CommandResult(directive, report=scheduler.run())
        if isinstance(directive, Status):
            return CommandResult(directive, status=scheduler.summary())
        if isinstance(directive, Approve):
            return CommandResult(directive, report=scheduler.approve(by=self.operator))
        if isinstance(directive, RequestChanges):
            return CommandResult(directive, report=scheduler.request_changes(directive.feedback, directive.target))
        if isinstance(directive, Pause):
            return CommandResult(directive, report=scheduler.pause())
        if isinstance(directive, SkipSkill):
            return CommandResult(directive, report=scheduler.skip_skill(directive.skill_id, directive.reason))
        if isinstance(directive, SkipGate):
            return CommandResult(directive, report=scheduler.skip_gate(directive.gate_id, directive.reason))
        if isinstance(directive, Show):
            return CommandResult(directive, deliverable=scheduler.show(directive.name))
        if isinstance(directive, JumpPhase):
            return CommandResult(directive, report=scheduler.jump(directive.name))
        if isinstance(directive, Abort):
            return CommandResult(directive, report=scheduler.abort(directive.reason))
        raise CommandError(f"Unsupported directive {directive!r}", USAGE)
