"""Declarative loop definition types.

A :class:`LoopDefinition` is immutable: phases in chain order, each with
its skills and an optional trailing gate. The engine is driven entirely by
these tables; there is no per-loop control flow.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from loopwork.record.models import ApprovalType

Handler = Union[str, Callable[..., Any]]


def handler_name(handler: Handler | None) -> str | None:
    """Stable textual form of a handler (``module:function``)."""
    if handler is None or isinstance(handler, str):
        return handler
    module = getattr(handler, "__module__", "?")
    qualname = getattr(handler, "__qualname__", repr(handler))
    return f"{module}:{qualname}"


@dataclass(frozen=True)
class SkillDef:
    skill_id: str
    handler: Handler | None = None
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    durable: bool = True
    once: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.skill_id,
            "handler": handler_name(self.handler),
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
            "durable": self.durable,
            "once": self.once,
            "description": self.description,
        }


@dataclass(frozen=True)
class CheckDef:
    """One binary verification probe of an auto gate."""

    name: str
    handler: Handler | None = None
    command: str | None = None
    timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "handler": handler_name(self.handler),
            "command": self.command,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class GateDef:
    gate_id: str
    approval_type: ApprovalType
    required: bool = True
    enabled: bool = True
    checks: tuple[CheckDef, ...] = ()
    condition: str | None = None
    inputs: tuple[str, ...] = ()
    once: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.gate_id,
            "type": str(self.approval_type),
            "required": self.required,
            "enabled": self.enabled,
            "checks": [check.to_dict() for check in self.checks],
            "condition": self.condition,
            "inputs": list(self.inputs),
            "once": self.once,
            "description": self.description,
        }


@dataclass(frozen=True)
class PhaseDef:
    name: str
    skills: tuple[SkillDef, ...] = ()
    gate: GateDef | None = None
    parallel: bool = False
    once: bool = False
    description: str = ""

    def skill(self, skill_id: str) -> SkillDef | None:
        for skill in self.skills:
            if skill.skill_id == skill_id:
                return skill
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "skills": [skill.to_dict() for skill in self.skills],
            "gate": self.gate.to_dict() if self.gate else None,
            "parallel": self.parallel,
            "once": self.once,
            "description": self.description,
        }


@dataclass(frozen=True)
class LoopDefinition:
    loop_id: str
    phases: tuple[PhaseDef, ...]
    seeds: tuple[str, ...] = ()
    items: tuple[str, ...] = ()
    description: str = ""
    source: str | None = field(default=None, compare=False)

    @property
    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    def phase(self, name: str) -> PhaseDef:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name)

    def has_phase(self, name: str) -> bool:
        return any(phase.name == name for phase in self.phases)

    def phase_index(self, name: str) -> int:
        return self.phase_names.index(name)

    def next_phase(self, name: str) -> str | None:
        index = self.phase_index(name)
        if index + 1 < len(self.phases):
            return self.phases[index + 1].name
        return None

    def skill(self, skill_id: str) -> tuple[PhaseDef, SkillDef]:
        for phase in self.phases:
            skill = phase.skill(skill_id)
            if skill is not None:
                return phase, skill
        raise KeyError(skill_id)

    def gate(self, gate_id: str) -> tuple[PhaseDef, GateDef]:
        for phase in self.phases:
            if phase.gate is not None and phase.gate.gate_id == gate_id:
                return phase, phase.gate
        raise KeyError(gate_id)

    def producer_of(self, deliverable: str) -> SkillDef | None:
        for phase in self.phases:
            for skill in phase.skills:
                if deliverable in skill.outputs:
                    return skill
        return None

    def resolve_skill_id(self, text: str) -> str | None:
        """Exact match first, then a unique case-insensitive match."""
        return _resolve(text, [s.skill_id for p in self.phases for s in p.skills])

    def resolve_gate_id(self, text: str) -> str | None:
        return _resolve(text, [p.gate.gate_id for p in self.phases if p.gate is not None])

    def resolve_phase_name(self, text: str) -> str | None:
        return _resolve(text, self.phase_names)

    def to_dict(self) -> dict[str, Any]:
        return {
            "loop": self.loop_id,
            "description": self.description,
            "seeds": list(self.seeds),
            "items": list(self.items),
            "phases": [phase.to_dict() for phase in self.phases],
        }

    def fingerprint(self) -> str:
        """sha256 over the canonical form; detects definition drift between sessions."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _resolve(text: str, candidates: list[str]) -> str | None:
    if text in candidates:
        return text
    folded = [c for c in candidates if c.casefold() == text.casefold()]
    if len(folded) == 1:
        return folded[0]
    return None
