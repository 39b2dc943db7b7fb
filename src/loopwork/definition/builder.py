"""Fluent builder for :class:`LoopDefinition`.

Example::

    loop = (
        LoopBuilder("release")
        .seed("brief")
        .phase("draft")
        .skill("write", handler="skills.release:write", inputs=["brief"], outputs=["notes"])
        .gate("review", "human")
        .phase("publish")
        .skill("ship", handler="skills.release:ship", inputs=["notes"])
        .build()
    )

``build()`` validates the whole definition and raises
:class:`DefinitionError` listing every problem found.
"""

from __future__ import annotations

from typing import Any, Iterable

from loopwork.errors import DefinitionError
from loopwork.record.models import ApprovalType

from .models import CheckDef, GateDef, Handler, LoopDefinition, PhaseDef, SkillDef
from .predicates import compile_predicate


class _PhaseDraft:
    def __init__(self, name: str, parallel: bool, once: bool, description: str) -> None:
        self.name = name
        self.parallel = parallel
        self.once = once
        self.description = description
        self.skills: list[SkillDef] = []
        self.gate: GateDef | None = None


class LoopBuilder:
    def __init__(self, loop_id: str, description: str = "") -> None:
        self._loop_id = loop_id
        self._description = description
        self._seeds: list[str] = []
        self._items: list[str] = []
        self._phases: list[_PhaseDraft] = []
        self._source: str | None = None

    def seed(self, *names: str) -> LoopBuilder:
        """Declare deliverables supplied from outside the loop."""
        self._seeds.extend(names)
        return self

    def items(self, items: Iterable[str]) -> LoopBuilder:
        """Default iteration queue (one chain pass per item)."""
        self._items.extend(str(item) for item in items)
        return self

    def source(self, path: str) -> LoopBuilder:
        self._source = path
        return self

    def phase(self, name: str, *, parallel: bool = False, once: bool = False, description: str = "") -> LoopBuilder:
        self._phases.append(_PhaseDraft(name, parallel, once, description))
        return self

    def skill(
        self,
        skill_id: str,
        *,
        handler: Handler | None = None,
        inputs: Iterable[str] = (),
        outputs: Iterable[str] = (),
        durable: bool = True,
        once: bool = False,
        description: str = "",
    ) -> LoopBuilder:
        phase = self._require_phase("skill")
        if phase.gate is not None:
            raise DefinitionError(
                f"Phase '{phase.name}': skill '{skill_id}' declared after the phase gate",
                [f"phases.{phase.name}: gate must trail its skills"],
            )
        phase.skills.append(
            SkillDef(
                skill_id=skill_id,
                handler=handler,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                durable=durable,
                once=once,
                description=description,
            )
        )
        return self

    def gate(
        self,
        gate_id: str,
        approval_type: ApprovalType | str = ApprovalType.HUMAN,
        *,
        required: bool = True,
        enabled: bool = True,
        checks: Iterable[CheckDef | dict[str, Any]] = (),
        condition: str | None = None,
        inputs: Iterable[str] = (),
        once: bool = False,
        description: str = "",
    ) -> LoopBuilder:
        phase = self._require_phase("gate")
        if phase.gate is not None:
            raise DefinitionError(
                f"Phase '{phase.name}' already has gate '{phase.gate.gate_id}'",
                [f"phases.{phase.name}: at most one gate per phase"],
            )
        try:
            kind = ApprovalType(str(approval_type).lower())
        except ValueError as exc:
            raise DefinitionError(
                f"Gate '{gate_id}': unknown type '{approval_type}'",
                [f"gates.{gate_id}.type: expected human, auto or conditional"],
            ) from exc
        phase.gate = GateDef(
            gate_id=gate_id,
            approval_type=kind,
            required=required,
            enabled=enabled,
            checks=tuple(c if isinstance(c, CheckDef) else _check_from_dict(c) for c in checks),
            condition=condition,
            inputs=tuple(inputs),
            once=once,
            description=description,
        )
        return self

    def build(self) -> LoopDefinition:
        definition = LoopDefinition(
            loop_id=self._loop_id,
            phases=tuple(
                PhaseDef(
                    name=draft.name,
                    skills=tuple(draft.skills),
                    gate=draft.gate,
                    parallel=draft.parallel,
                    once=draft.once,
                    description=draft.description,
                )
                for draft in self._phases
            ),
            seeds=tuple(self._seeds),
            items=tuple(self._items),
            description=self._description,
            source=self._source,
        )
        errors = validate_definition(definition)
        if errors:
            raise DefinitionError(
                f"Loop '{self._loop_id}' is invalid ({len(errors)} problem(s)): {errors[0]}",
                errors,
            )
        return definition

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopBuilder:
        """Builder pre-populated from a schema-valid definition mapping."""
        builder = cls(str(data["loop"]), description=data.get("description", ""))
        builder.seed(*[str(s) for s in data.get("seeds", [])])
        builder.items(data.get("items", []))
        for phase in data.get("phases", []):
            builder.phase(
                phase["name"],
                parallel=bool(phase.get("parallel", False)),
                once=bool(phase.get("once", False)),
                description=phase.get("description", ""),
            )
            for skill in phase.get("skills", []):
                builder.skill(
                    skill["id"],
                    handler=skill.get("handler"),
                    inputs=skill.get("inputs", []),
                    outputs=skill.get("outputs", []),
                    durable=bool(skill.get("durable", True)),
                    once=bool(skill.get("once", False)),
                    description=skill.get("description", ""),
                )
            gate = phase.get("gate")
            if gate:
                builder.gate(
                    gate["id"],
                    gate.get("type", "human"),
                    required=bool(gate.get("required", True)),
                    enabled=bool(gate.get("enabled", True)),
                    checks=gate.get("checks", []),
                    condition=gate.get("condition"),
                    inputs=gate.get("inputs", []),
                    once=bool(gate.get("once", False)),
                    description=gate.get("description", ""),
                )
        return builder

    def _require_phase(self, what: str) -> _PhaseDraft:
        if not self._phases:
            raise DefinitionError(f"Declare a phase before adding a {what}", [f"{what}: no enclosing phase"])
        return self._phases[-1]


def _check_from_dict(data: dict[str, Any]) -> CheckDef:
    return CheckDef(
        name=str(data["name"]),
        handler=data.get("handler"),
        command=data.get("command"),
        timeout=data.get("timeout"),
    )


def validate_definition(definition: LoopDefinition) -> list[str]:
    """Cross-reference checks the JSON Schema cannot express."""
    errors: list[str] = []

    if not definition.phases:
        errors.append("phases: a loop needs at least one phase")

    seen_ids: dict[str, str] = {}

    def claim(kind: str, ident: str) -> None:
        if ident in seen_ids:
            errors.append(f"{kind} '{ident}' clashes with {seen_ids[ident]} '{ident}'")
        else:
            seen_ids[ident] = kind

    available: set[str] = set(definition.seeds)
    producers: dict[str, str] = {}

    for phase in definition.phases:
        claim("phase", phase.name)
        if not phase.skills and phase.gate is None:
            errors.append(f"phases.{phase.name}: phase has neither skills nor a gate")

        produced_here: set[str] = set()
        for skill in phase.skills:
            claim("skill", skill.skill_id)
            for name in skill.inputs:
                satisfied = name in available or (not phase.parallel and name in produced_here)
                if not satisfied:
                    errors.append(
                        f"skills.{skill.skill_id}.inputs: '{name}' is not a seed nor produced by an earlier skill"
                    )
            for name in skill.outputs:
                if name in producers:
                    errors.append(
                        f"skills.{skill.skill_id}.outputs: '{name}' is already produced by '{producers[name]}'"
                    )
                else:
                    producers[name] = skill.skill_id
                if not phase.parallel:
                    produced_here.add(name)
            if phase.parallel:
                produced_here.update(skill.outputs)

        if phase.parallel:
            errors.extend(_parallel_conflicts(phase))

        available.update(produced_here)

        gate = phase.gate
        if gate is None:
            continue
        claim("gate", gate.gate_id)
        for name in gate.inputs:
            if name not in available:
                errors.append(f"gates.{gate.gate_id}.inputs: '{name}' is not available at this gate")
        if gate.approval_type == ApprovalType.CONDITIONAL:
            if not gate.condition:
                errors.append(f"gates.{gate.gate_id}: conditional gate needs a condition")
            else:
                try:
                    compile_predicate(gate.condition)
                except DefinitionError as exc:
                    errors.extend(f"gates.{gate.gate_id}.condition: {e}" for e in exc.errors)
        for check in gate.checks:
            if bool(check.handler) == bool(check.command):
                errors.append(
                    f"gates.{gate.gate_id}.checks.{check.name}: exactly one of handler or command is required"
                )

    return errors


def _parallel_conflicts(phase: PhaseDef) -> list[str]:
    errors: list[str] = []
    skills = list(phase.skills)
    for index, left in enumerate(skills):
        left_set = set(left.inputs) | set(left.outputs)
        for right in skills[index + 1:]:
            overlap = left_set & (set(right.inputs) | set(right.outputs))
            if overlap:
                errors.append(
                    f"phases.{phase.name}: parallel skills '{left.skill_id}' and '{right.skill_id}' "
                    f"share deliverables {sorted(overlap)}"
                )
    return errors
