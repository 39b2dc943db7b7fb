"""Execution record data types.

The :class:`ExecutionRecord` is the single persisted source of truth for a
run. Every nested type serializes with ``to_dict``/``from_dict`` so that
``ExecutionRecord.from_dict(record.to_dict()) == record``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

SCHEMA_VERSION = 1


class RunStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class PhaseStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SkillStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class GateStatus(StrEnum):
    PENDING = "pending"
    PASSED = "passed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class ApprovalType(StrEnum):
    HUMAN = "human"
    AUTO = "auto"
    CONDITIONAL = "conditional"


TERMINAL_SKILL_STATUSES: frozenset[SkillStatus] = frozenset({SkillStatus.COMPLETED, SkillStatus.SKIPPED})
SATISFIED_GATE_STATUSES: frozenset[GateStatus] = frozenset({GateStatus.PASSED, GateStatus.SKIPPED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class Deliverable:
    """Reference to an artifact produced by a skill (or a gate report).

    Deliverables are never mutated; a re-run registers a new version and
    the previous one moves to the record's ``superseded`` history.
    """

    name: str
    producer: str
    phase: str | None
    ref: str | None = None
    durable: bool = True
    version: int = 1
    item: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "producer": self.producer,
            "phase": self.phase,
            "ref": self.ref,
            "durable": self.durable,
            "version": self.version,
            "item": self.item,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deliverable:
        return cls(
            name=data["name"],
            producer=data["producer"],
            phase=data.get("phase"),
            ref=data.get("ref"),
            durable=bool(data.get("durable", True)),
            version=int(data.get("version", 1)),
            item=data.get("item"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class SkillState:
    skill_id: str
    status: SkillStatus = SkillStatus.PENDING
    reason: str | None = None
    outputs: list[str] = field(default_factory=list)
    attempts: int = 0
    error: str | None = None
    feedback: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SKILL_STATUSES

    def reset(self, feedback: str | None = None) -> None:
        """Return the skill to pending, keeping its attempt count."""
        self.status = SkillStatus.PENDING
        self.reason = None
        self.error = None
        self.feedback = feedback
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "status": str(self.status),
            "reason": self.reason,
            "outputs": list(self.outputs),
            "attempts": self.attempts,
            "error": self.error,
            "feedback": self.feedback,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillState:
        return cls(
            skill_id=data["skill_id"],
            status=SkillStatus(data.get("status", "pending")),
            reason=data.get("reason"),
            outputs=list(data.get("outputs", [])),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
            feedback=data.get("feedback"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class PhaseState:
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    skills: list[SkillState] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None

    def skill(self, skill_id: str) -> SkillState | None:
        for state in self.skills:
            if state.skill_id == skill_id:
                return state
        return None

    @property
    def skills_terminal(self) -> bool:
        return all(state.is_terminal for state in self.skills)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": str(self.status),
            "skills": [state.to_dict() for state in self.skills],
            "deliverables": list(self.deliverables),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        return cls(
            name=data["name"],
            status=PhaseStatus(data.get("status", "pending")),
            skills=[SkillState.from_dict(s) for s in data.get("skills", [])],
            deliverables=list(data.get("deliverables", [])),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class GateState:
    gate_id: str
    phase: str
    approval_type: ApprovalType
    required: bool = True
    enabled: bool = True
    status: GateStatus = GateStatus.PENDING
    type_override: ApprovalType | None = None
    skip_reason: str | None = None
    approved_by: str | None = None
    approved_at: str | None = None
    attempts: int = 0
    condition_triggered: bool | None = None
    last_failures: list[str] = field(default_factory=list)
    feedback: list[dict[str, Any]] = field(default_factory=list)

    @property
    def effective_type(self) -> ApprovalType:
        return self.type_override or self.approval_type

    @property
    def is_satisfied(self) -> bool:
        return self.status in SATISFIED_GATE_STATUSES

    @property
    def awaiting_operator(self) -> bool:
        """True when the gate can only be passed by an approval directive."""
        if self.status != GateStatus.PENDING or self.attempts == 0:
            return False
        if self.effective_type == ApprovalType.HUMAN:
            return True
        return self.effective_type == ApprovalType.CONDITIONAL and bool(self.condition_triggered)

    def reset(self) -> None:
        """Return the gate to pending; feedback history is kept."""
        self.status = GateStatus.PENDING
        self.skip_reason = None
        self.approved_by = None
        self.approved_at = None
        self.attempts = 0
        self.condition_triggered = None
        self.last_failures = []

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "phase": self.phase,
            "approval_type": str(self.approval_type),
            "required": self.required,
            "enabled": self.enabled,
            "status": str(self.status),
            "type_override": str(self.type_override) if self.type_override else None,
            "skip_reason": self.skip_reason,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "attempts": self.attempts,
            "condition_triggered": self.condition_triggered,
            "last_failures": list(self.last_failures),
            "feedback": [dict(entry) for entry in self.feedback],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateState:
        override = data.get("type_override")
        return cls(
            gate_id=data["gate_id"],
            phase=data["phase"],
            approval_type=ApprovalType(data["approval_type"]),
            required=bool(data.get("required", True)),
            enabled=bool(data.get("enabled", True)),
            status=GateStatus(data.get("status", "pending")),
            type_override=ApprovalType(override) if override else None,
            skip_reason=data.get("skip_reason"),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            attempts=int(data.get("attempts", 0)),
            condition_triggered=data.get("condition_triggered"),
            last_failures=list(data.get("last_failures", [])),
            feedback=[dict(entry) for entry in data.get("feedback", [])],
        )


@dataclass
class IterationContext:
    """Outer work-item queue; each item drives one pass of the phase chain."""

    current: str | None = None
    completed: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)

    @classmethod
    def from_items(cls, items: list[str]) -> IterationContext:
        queue = list(items)
        current = queue.pop(0) if queue else None
        return cls(current=current, remaining=queue)

    def advance(self) -> str | None:
        """Mark the current item done and dequeue the next one."""
        if self.current is not None:
            self.completed.append(self.current)
        self.current = self.remaining.pop(0) if self.remaining else None
        return self.current

    @property
    def exhausted(self) -> bool:
        return self.current is None and not self.remaining

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "completed": list(self.completed),
            "remaining": list(self.remaining),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IterationContext:
        return cls(
            current=data.get("current"),
            completed=list(data.get("completed", [])),
            remaining=list(data.get("remaining", [])),
        )


@dataclass(frozen=True)
class LogEntry:
    """Operator-visible execution log line (skips, reworks, gate decisions)."""

    at: str
    event: str
    message: str
    subject: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "event": self.event, "message": self.message, "subject": self.subject}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            at=data["at"],
            event=data["event"],
            message=data.get("message", ""),
            subject=data.get("subject"),
        )


@dataclass
class ExecutionRecord:
    loop_id: str
    run_id: str
    current_phase: str | None
    status: RunStatus = RunStatus.ACTIVE
    phases: list[PhaseState] = field(default_factory=list)
    gates: dict[str, GateState] = field(default_factory=dict)
    deliverables: dict[str, Deliverable] = field(default_factory=dict)
    superseded: list[Deliverable] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    iteration: IterationContext | None = None
    remote_execution_id: str | None = None
    remote_degraded: bool = False
    pre_run_context: dict[str, Any] | None = None
    acknowledged_at: str | None = None
    definition_path: str | None = None
    definition_hash: str | None = None
    abort_reason: str | None = None
    log: list[LogEntry] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    schema_version: int = SCHEMA_VERSION

    def phase(self, name: str) -> PhaseState:
        for state in self.phases:
            if state.name == name:
                return state
        raise KeyError(name)

    def phase_index(self, name: str) -> int:
        for index, state in enumerate(self.phases):
            if state.name == name:
                return index
        raise KeyError(name)

    def locate_skill(self, skill_id: str) -> tuple[PhaseState, SkillState]:
        for phase in self.phases:
            state = phase.skill(skill_id)
            if state is not None:
                return phase, state
        raise KeyError(skill_id)

    def gate_for_phase(self, phase_name: str) -> GateState | None:
        for gate in self.gates.values():
            if gate.phase == phase_name:
                return gate
        return None

    @property
    def current_item(self) -> str | None:
        return self.iteration.current if self.iteration else None

    def add_log(self, event: str, message: str, subject: str | None = None, at: str | None = None) -> LogEntry:
        entry = LogEntry(at=at or to_iso(utc_now()), event=event, message=message, subject=subject)
        self.log.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "loop_id": self.loop_id,
            "run_id": self.run_id,
            "current_phase": self.current_phase,
            "status": str(self.status),
            "phases": [phase.to_dict() for phase in self.phases],
            "gates": {gate_id: gate.to_dict() for gate_id, gate in self.gates.items()},
            "deliverables": {name: d.to_dict() for name, d in self.deliverables.items()},
            "superseded": [d.to_dict() for d in self.superseded],
            "metrics": dict(self.metrics),
            "iteration": self.iteration.to_dict() if self.iteration else None,
            "remote_execution_id": self.remote_execution_id,
            "remote_degraded": self.remote_degraded,
            "pre_run_context": self.pre_run_context,
            "acknowledged_at": self.acknowledged_at,
            "definition_path": self.definition_path,
            "definition_hash": self.definition_hash,
            "abort_reason": self.abort_reason,
            "log": [entry.to_dict() for entry in self.log],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionRecord:
        iteration = data.get("iteration")
        return cls(
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
            loop_id=data["loop_id"],
            run_id=data["run_id"],
            current_phase=data.get("current_phase"),
            status=RunStatus(data["status"]),
            phases=[PhaseState.from_dict(p) for p in data.get("phases", [])],
            gates={gate_id: GateState.from_dict(g) for gate_id, g in data.get("gates", {}).items()},
            deliverables={name: Deliverable.from_dict(d) for name, d in data.get("deliverables", {}).items()},
            superseded=[Deliverable.from_dict(d) for d in data.get("superseded", [])],
            metrics=dict(data.get("metrics", {})),
            iteration=IterationContext.from_dict(iteration) if iteration else None,
            remote_execution_id=data.get("remote_execution_id"),
            remote_degraded=bool(data.get("remote_degraded", False)),
            pre_run_context=data.get("pre_run_context"),
            acknowledged_at=data.get("acknowledged_at"),
            definition_path=data.get("definition_path"),
            definition_hash=data.get("definition_hash"),
            abort_reason=data.get("abort_reason"),
            log=[LogEntry.from_dict(entry) for entry in data.get("log", [])],
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )
