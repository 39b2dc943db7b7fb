"""Deliverable registry: producer/consumer edges over the execution record.

Consumer edges come from the loop definition (declared skill and gate
inputs); produced deliverables live in the record. The registry never
inspects deliverable content.
"""

from __future__ import annotations

import logging
from typing import Mapping

from loopwork.definition.models import LoopDefinition
from loopwork.record.models import (
    Deliverable,
    ExecutionRecord,
    SkillStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

SEED_PRODUCER = "seed"


class DeliverableRegistry:
    def __init__(self, definition: LoopDefinition, record: ExecutionRecord) -> None:
        self.definition = definition
        self.record = record

    def get(self, name: str) -> Deliverable | None:
        return self.record.deliverables.get(name)

    def register(self, skill_id: str, outputs: Mapping[str, str | None]) -> list[Deliverable]:
        """Record the outputs of a completed skill.

        A name that already exists is superseded: the old reference moves
        to ``record.superseded`` and the new one gets the next version.
        """
        phase, skill = self.definition.skill(skill_id)
        created: list[Deliverable] = []
        for name, ref in outputs.items():
            created.append(
                self.add(
                    name,
                    producer=skill_id,
                    phase=phase.name,
                    ref=ref,
                    durable=skill.durable,
                )
            )
        return created

    def add(
        self,
        name: str,
        *,
        producer: str,
        phase: str | None,
        ref: str | None,
        durable: bool = True,
    ) -> Deliverable:
        previous = self.record.deliverables.get(name)
        version = 1
        if previous is not None:
            self.record.superseded.append(previous)
            version = previous.version + 1
            logger.debug("Deliverable %s superseded (v%d -> v%d)", name, previous.version, version)

        deliverable = Deliverable(
            name=name,
            producer=producer,
            phase=phase,
            ref=ref,
            durable=durable,
            version=version,
            item=self.record.current_item,
            created_at=to_iso(utc_now()),
        )
        self.record.deliverables[name] = deliverable
        if phase is not None:
            try:
                phase_state = self.record.phase(phase)
            except KeyError:
                phase_state = None
            if phase_state is not None and name not in phase_state.deliverables:
                phase_state.deliverables.append(name)
        return deliverable

    def register_seeds(self, seeds: Mapping[str, str | None]) -> list[Deliverable]:
        return [
            self.add(name, producer=SEED_PRODUCER, phase=None, ref=ref, durable=True)
            for name, ref in seeds.items()
        ]

    def dependents(self, name: str) -> list[str]:
        """Skills and gates (in chain order) that declared *name* as input."""
        consumers: list[str] = []
        for phase in self.definition.phases:
            for skill in phase.skills:
                if name in skill.inputs:
                    consumers.append(skill.skill_id)
            if phase.gate is not None and name in phase.gate.inputs:
                consumers.append(phase.gate.gate_id)
        return consumers

    def inputs_for(self, skill_id: str) -> dict[str, Deliverable]:
        _, skill = self.definition.skill(skill_id)
        return {name: self.record.deliverables[name] for name in skill.inputs if name in self.record.deliverables}

    def missing_inputs(self, skill_id: str) -> list[str]:
        _, skill = self.definition.skill(skill_id)
        return [name for name in skill.inputs if name not in self.record.deliverables]

    def skip_warnings(self, skill_id: str) -> list[str]:
        """Warnings for consumers still ahead of a skipped skill's outputs."""
        _, skill = self.definition.skill(skill_id)
        warnings: list[str] = []
        for name in skill.outputs:
            pending = [c for c in self.dependents(name) if self._consumer_pending(c)]
            if pending:
                warnings.append(
                    f"'{name}' will not be produced because '{skill_id}' was skipped; "
                    f"still needed by {', '.join(pending)}"
                )
        return warnings

    def dependency_warnings(self, skill_id: str) -> list[str]:
        """Warnings for a skill about to run with inputs from skipped producers."""
        warnings: list[str] = []
        for name in self.missing_inputs(skill_id):
            producer = self.definition.producer_of(name)
            if producer is None:
                warnings.append(f"Input '{name}' for '{skill_id}' was never supplied")
                continue
            try:
                _, state = self.record.locate_skill(producer.skill_id)
            except KeyError:
                state = None
            if state is not None and state.status == SkillStatus.SKIPPED:
                warnings.append(
                    f"Input '{name}' for '{skill_id}' is missing: producer '{producer.skill_id}' "
                    f"was skipped ({state.reason})"
                )
            else:
                warnings.append(f"Input '{name}' for '{skill_id}' has not been produced")
        return warnings

    def _consumer_pending(self, consumer: str) -> bool:
        try:
            _, state = self.record.locate_skill(consumer)
        except KeyError:
            gate = self.record.gates.get(consumer)
            return gate is not None and not gate.is_satisfied
        return not state.is_terminal
