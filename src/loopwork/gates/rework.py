"""Typed rework requests.

``changes: <text>`` never routes control flow by itself: it is turned into a
:class:`ReworkRequest` whose target has been checked against the loop's
phases and skills before any state changes.
"""

from __future__ import annotations

from dataclasses import dataclass

from loopwork.definition.models import LoopDefinition
from loopwork.errors import ReworkError


@dataclass(frozen=True)
class ReworkTarget:
    phase: str
    skill: str | None = None

    @classmethod
    def parse(cls, text: str) -> ReworkTarget:
        """Parse ``phase`` or ``phase/skill``."""
        phase, _, skill = text.strip().partition("/")
        if not phase.strip():
            raise ReworkError(f"Invalid rework target '{text}'; expected <phase> or <phase>/<skill>")
        return cls(phase=phase.strip(), skill=skill.strip() or None)

    def __str__(self) -> str:
        return f"{self.phase}/{self.skill}" if self.skill else self.phase


@dataclass(frozen=True)
class ReworkRequest:
    gate_id: str
    feedback: str
    target: ReworkTarget


def build_rework_request(
    definition: LoopDefinition,
    gate_id: str,
    feedback: str,
    target: str | ReworkTarget | None = None,
) -> ReworkRequest:
    """Create a validated rework request.

    The default target is the gate's own phase. A target may name an
    earlier phase but never one after the gate.

    Raises:
        ReworkError: Empty feedback, unknown gate, phase or skill, a skill
            outside the named phase, or a target past the gate.
    """
    text = feedback.strip()
    if not text:
        raise ReworkError("Rework feedback must not be empty")

    try:
        gate_phase, _ = definition.gate(gate_id)
    except KeyError as exc:
        raise ReworkError(f"Unknown gate '{gate_id}'") from exc

    if target is None:
        resolved = ReworkTarget(phase=gate_phase.name)
    elif isinstance(target, str):
        resolved = ReworkTarget.parse(target)
    else:
        resolved = target

    phase_name = definition.resolve_phase_name(resolved.phase)
    if phase_name is None:
        raise ReworkError(
            f"Unknown rework phase '{resolved.phase}'. Known phases: {', '.join(definition.phase_names)}"
        )
    if definition.phase_index(phase_name) > definition.phase_index(gate_phase.name):
        raise ReworkError(
            f"Rework target '{phase_name}' comes after gate '{gate_id}' (phase '{gate_phase.name}')"
        )

    skill_id: str | None = None
    if resolved.skill is not None:
        phase = definition.phase(phase_name)
        skill_id = next(
            (s.skill_id for s in phase.skills if s.skill_id.casefold() == resolved.skill.casefold()),
            None,
        )
        if skill_id is None:
            known = ", ".join(s.skill_id for s in phase.skills) or "none"
            raise ReworkError(f"Phase '{phase_name}' has no skill '{resolved.skill}'. Skills: {known}")

    return ReworkRequest(gate_id=gate_id, feedback=text, target=ReworkTarget(phase_name, skill_id))
