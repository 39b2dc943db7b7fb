"""Gate evaluation.

Rules by effective approval type:

- ``human``: pending until approved; ``changes:`` rejects into a rework.
- ``auto``: every check runs (no short-circuit); the gate passes iff all
  pass. On failure it stays pending and a ``<gate>-failure-report``
  deliverable is written. Re-evaluation reruns the checks and yields the
  same verdict when nothing changed.
- ``conditional``: a false predicate passes the gate; a true predicate
  turns it into a human gate.

A gate that is already passed or skipped is never re-evaluated, so a
skip-gate override always wins over failing checks. Disabled or
non-required gates pass without evaluation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Callable, Mapping

from loopwork.definition.models import GateDef, LoopDefinition
from loopwork.definition.predicates import PredicateContext, compile_predicate
from loopwork.deliverables.registry import DeliverableRegistry
from loopwork.errors import TransitionError
from loopwork.record.lifecycle import apply_transition
from loopwork.record.models import (
    ApprovalType,
    Deliverable,
    ExecutionRecord,
    GateState,
    GateStatus,
    to_iso,
    utc_now,
)

from .checks import CheckContext, CheckResult, CheckRunner
from .rework import ReworkRequest

logger = logging.getLogger(__name__)

FAILURE_REPORT_SUFFIX = "-failure-report"


class GateVerdict(StrEnum):
    PASSED = "passed"
    SKIPPED = "skipped"
    AWAITING_APPROVAL = "awaiting_approval"
    CHECKS_FAILED = "checks_failed"


@dataclass
class GateOutcome:
    gate_id: str
    verdict: GateVerdict
    newly_passed: bool = False
    results: list[CheckResult] = field(default_factory=list)
    report: Deliverable | None = None
    note: str = ""

    @property
    def satisfied(self) -> bool:
        return self.verdict in (GateVerdict.PASSED, GateVerdict.SKIPPED)

    @property
    def failures(self) -> list[CheckResult]:
        return [result for result in self.results if not result.passed]


def failure_report_name(gate_id: str) -> str:
    return f"{gate_id}{FAILURE_REPORT_SUFFIX}"


class GateEvaluator:
    def __init__(
        self,
        definition: LoopDefinition,
        record: ExecutionRecord,
        registry: DeliverableRegistry,
        *,
        check_runner: CheckRunner,
        report_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.definition = definition
        self.record = record
        self.registry = registry
        self.check_runner = check_runner
        self.report_dir = report_dir
        self.env = env if env is not None else os.environ
        self.clock = clock

    def state(self, gate_id: str) -> GateState:
        try:
            return self.record.gates[gate_id]
        except KeyError as exc:
            raise TransitionError(f"Unknown gate '{gate_id}'") from exc

    def evaluate(self, gate_id: str) -> GateOutcome:
        gate = self.state(gate_id)
        _, gate_def = self.definition.gate(gate_id)

        if gate.is_satisfied:
            verdict = GateVerdict.SKIPPED if gate.status == GateStatus.SKIPPED else GateVerdict.PASSED
            return GateOutcome(gate_id, verdict, note="already decided")

        if gate.status == GateStatus.REJECTED:
            apply_transition(gate, GateStatus.PENDING, subject=f"gate {gate_id}")

        if not gate.enabled or not gate.required:
            note = "gate disabled" if not gate.enabled else "gate not required"
            self._pass(gate, by=f"auto:{'disabled' if not gate.enabled else 'optional'}")
            logger.info("Gate %s passed without evaluation (%s)", gate_id, note)
            return GateOutcome(gate_id, GateVerdict.PASSED, newly_passed=True, note=note)

        gate.attempts += 1
        kind = gate.effective_type

        if kind == ApprovalType.AUTO:
            return self._evaluate_auto(gate, gate_def)

        if kind == ApprovalType.CONDITIONAL:
            if gate_def.condition is None:
                triggered = False
            else:
                predicate = compile_predicate(gate_def.condition)
                triggered = bool(predicate(PredicateContext(record=self.record, env=self.env)))
            gate.condition_triggered = triggered
            if not triggered:
                self._pass(gate, by="auto:condition")
                logger.info("Conditional gate %s passed: condition is false", gate_id)
                return GateOutcome(gate_id, GateVerdict.PASSED, newly_passed=True, note="condition false")
            return GateOutcome(gate_id, GateVerdict.AWAITING_APPROVAL, note="condition true; approval required")

        return GateOutcome(gate_id, GateVerdict.AWAITING_APPROVAL)

    def _evaluate_auto(self, gate: GateState, gate_def: GateDef) -> GateOutcome:
        context = CheckContext(
            gate_id=gate.gate_id,
            record=self.record,
            work_dir=self.check_runner.work_dir,
            inputs={n: self.record.deliverables[n] for n in gate_def.inputs if n in self.record.deliverables},
        )
        results = [self.check_runner.run(check, context) for check in gate_def.checks]
        failures = [result for result in results if not result.passed]

        if not failures:
            gate.last_failures = []
            self._pass(gate, by="auto:checks")
            logger.info("Auto gate %s passed (%d check(s))", gate.gate_id, len(results))
            return GateOutcome(gate.gate_id, GateVerdict.PASSED, newly_passed=True, results=results)

        gate.last_failures = [result.name for result in failures]
        report = self._write_failure_report(gate, results)
        logger.warning(
            "Auto gate %s pending: %d of %d check(s) failed (%s)",
            gate.gate_id,
            len(failures),
            len(results),
            ", ".join(gate.last_failures),
        )
        return GateOutcome(gate.gate_id, GateVerdict.CHECKS_FAILED, results=results, report=report)

    def _write_failure_report(self, gate: GateState, results: list[CheckResult]) -> Deliverable:
        name = failure_report_name(gate.gate_id)
        ref: str | None = None
        if self.report_dir is not None:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            path = self.report_dir / f"{name}.json"
            payload = {
                "gate": gate.gate_id,
                "attempt": gate.attempts,
                "item": self.record.current_item,
                "generated_at": to_iso(self.clock()),
                "checks": [result.to_dict() for result in results],
            }
            path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            ref = str(path)
        return self.registry.add(name, producer=gate.gate_id, phase=gate.phase, ref=ref, durable=False)

    def approve(self, gate_id: str, by: str = "operator") -> GateState:
        gate = self.state(gate_id)
        if not gate.awaiting_operator:
            if gate.is_satisfied:
                raise TransitionError(f"Gate '{gate_id}' is already {gate.status}")
            if gate.effective_type == ApprovalType.AUTO:
                raise TransitionError(
                    f"Gate '{gate_id}' is automatic; fix the failing checks and run 'go', or use skip-gate"
                )
            raise TransitionError(f"Gate '{gate_id}' is not awaiting approval")
        self._pass(gate, by=by)
        self.record.add_log("gate_approved", f"Gate {gate_id} approved by {by}", subject=gate_id, at=gate.approved_at)
        return gate

    def reject(self, request: ReworkRequest) -> GateState:
        """Record operator feedback and return the gate to pending."""
        gate = self.state(request.gate_id)
        if gate.is_satisfied:
            raise TransitionError(f"Gate '{request.gate_id}' is already {gate.status}")
        if not gate.awaiting_operator:
            raise TransitionError(f"Gate '{request.gate_id}' is not awaiting review")
        apply_transition(gate, GateStatus.REJECTED, subject=f"gate {gate.gate_id}")
        at = to_iso(self.clock())
        gate.feedback.append({"at": at, "text": request.feedback, "target": str(request.target)})
        self.record.add_log(
            "gate_rejected",
            f"Changes requested at {request.gate_id}: {request.feedback}",
            subject=request.gate_id,
            at=at,
        )
        apply_transition(gate, GateStatus.PENDING, subject=f"gate {gate.gate_id}")
        gate.reset()
        return gate

    def skip(self, gate_id: str, reason: str) -> GateState:
        gate = self.state(gate_id)
        text = reason.strip()
        if not text:
            raise TransitionError(f"skip-gate {gate_id} requires a reason")
        if gate.is_satisfied:
            raise TransitionError(f"Gate '{gate_id}' is already {gate.status}")
        apply_transition(gate, GateStatus.SKIPPED, subject=f"gate {gate_id}")
        gate.skip_reason = text
        gate.approved_by = "skip-gate"
        gate.approved_at = to_iso(self.clock())
        self.record.add_log("gate_skipped", f"Gate {gate_id} skipped: {text}", subject=gate_id, at=gate.approved_at)
        logger.info("Gate %s force-passed: %s", gate_id, text)
        return gate

    def set_enabled(self, gate_id: str, enabled: bool) -> GateState:
        gate = self.state(gate_id)
        gate.enabled = enabled
        return gate

    def set_type_override(self, gate_id: str, approval_type: ApprovalType | None) -> GateState:
        gate = self.state(gate_id)
        gate.type_override = None if approval_type == gate.approval_type else approval_type
        return gate

    def _pass(self, gate: GateState, by: str) -> None:
        apply_transition(gate, GateStatus.PASSED, subject=f"gate {gate.gate_id}")
        gate.approved_by = by
        gate.approved_at = to_iso(self.clock())
