"""Phase scheduler: the table-driven run loop.

A phase completes when every skill is completed or skipped and its gate
(if any) is passed or skipped. Only then does the next phase start, so a
later phase's skills never begin early. With an iteration context,
finishing the last phase dequeues the next work item and resets every
phase, skill and gate not marked ``once``; the run completes when the
queue is empty.

Every mutation is persisted through the record store before the
scheduler moves on, and mirrored to the execution tracker on a
best-effort basis.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from ulid import ULID

from loopwork.definition.models import LoopDefinition, PhaseDef
from loopwork.deliverables.registry import DeliverableRegistry
from loopwork.errors import LoopworkError, ReworkError, TransitionError
from loopwork.events import emit_event
from loopwork.gates.checks import CheckRunner
from loopwork.gates.evaluator import GateEvaluator, GateVerdict
from loopwork.gates.rework import ReworkRequest, build_rework_request
from loopwork.record.lifecycle import apply_transition
from loopwork.record.models import (
    ApprovalType,
    Deliverable,
    ExecutionRecord,
    GateState,
    GateStatus,
    IterationContext,
    PhaseState,
    PhaseStatus,
    RunStatus,
    SkillState,
    SkillStatus,
    to_iso,
    utc_now,
)
from loopwork.record.store import RecordStore
from loopwork.skills.executor import SkillExecutor, SkillResult
from loopwork.tracker.tracker import ExecutionTracker

from .report import RunReport, StopReason

logger = logging.getLogger(__name__)


def new_record(
    definition: LoopDefinition,
    *,
    items: list[str] | None = None,
    run_id: str | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ExecutionRecord:
    """Fresh record with every phase, skill and gate pending."""
    now = to_iso(clock())
    queue = list(items) if items is not None else list(definition.items)
    phases: list[PhaseState] = []
    gates: dict[str, GateState] = {}
    for phase in definition.phases:
        phases.append(PhaseState(name=phase.name, skills=[SkillState(skill.skill_id) for skill in phase.skills]))
        if phase.gate is not None:
            gates[phase.gate.gate_id] = GateState(
                gate_id=phase.gate.gate_id,
                phase=phase.name,
                approval_type=phase.gate.approval_type,
                required=phase.gate.required,
                enabled=phase.gate.enabled,
            )
    return ExecutionRecord(
        loop_id=definition.loop_id,
        run_id=run_id or str(ULID()),
        current_phase=definition.phases[0].name,
        phases=phases,
        gates=gates,
        iteration=IterationContext.from_items(queue) if queue else None,
        definition_path=definition.source,
        definition_hash=definition.fingerprint(),
        created_at=now,
        updated_at=now,
    )


class PhaseScheduler:
    def __init__(
        self,
        definition: LoopDefinition,
        record: ExecutionRecord,
        store: RecordStore,
        *,
        work_dir: Path,
        run_dir: Path | None = None,
        executor: SkillExecutor | None = None,
        check_runner: CheckRunner | None = None,
        tracker: ExecutionTracker | None = None,
        on_complete: Callable[[ExecutionRecord], Any] | None = None,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int | None = None,
    ) -> None:
        if record.loop_id != definition.loop_id:
            raise LoopworkError(
                f"Execution record belongs to loop '{record.loop_id}', not '{definition.loop_id}'"
            )
        self.definition = definition
        self.record = record
        self.store = store
        self.work_dir = Path(work_dir)
        self.run_dir = run_dir
        self.executor = executor or SkillExecutor(definition, self.work_dir)
        self.tracker = tracker or ExecutionTracker()
        self.on_complete = on_complete
        self.clock = clock
        self.max_workers = max_workers
        self.registry = DeliverableRegistry(definition, record)
        self.evaluator = GateEvaluator(
            definition,
            record,
            self.registry,
            check_runner=check_runner or CheckRunner(self.work_dir, env=env),
            report_dir=run_dir / "deliverables" if run_dir is not None else None,
            env=env if env is not None else os.environ,
            clock=clock,
        )
        self._pause = threading.Event()

        if record.definition_hash and record.definition_hash != definition.fingerprint():
            logger.warning(
                "Loop definition '%s' changed since run %s started; continuing with the current definition",
                definition.loop_id,
                record.run_id,
            )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def begin(
        cls,
        definition: LoopDefinition,
        store: RecordStore,
        *,
        work_dir: Path,
        seeds: Mapping[str, str | None] | None = None,
        items: list[str] | None = None,
        run_dir_root: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
        **kwargs: Any,
    ) -> PhaseScheduler:
        """Create, register and persist a new run (cold start)."""
        record = new_record(definition, items=items, clock=clock)
        run_dir = kwargs.pop("run_dir", None)
        if run_dir_root is not None:
            run_dir = run_dir_root / record.run_id
        scheduler = cls(definition, record, store, work_dir=work_dir, run_dir=run_dir, clock=clock, **kwargs)

        supplied = dict(seeds or {})
        scheduler.registry.register_seeds(supplied)
        for name in definition.seeds:
            if name not in supplied:
                record.add_log("seed_missing", f"Seed deliverable '{name}' was not supplied", subject=name)
                logger.warning("Seed deliverable '%s' was not supplied", name)

        scheduler.tracker.start(record)
        record.add_log("run_started", f"Run {record.run_id} of loop {record.loop_id} started", at=record.created_at)
        scheduler._emit("run_started", items=list(items or definition.items), seeds=sorted(supplied))
        scheduler._save()
        return scheduler

    def run(self) -> RunReport:
        """Drive the run until it completes or needs an operator decision (``go``)."""
        record = self.record
        if record.status == RunStatus.COMPLETED:
            return RunReport(StopReason.COMPLETED, message="Run already completed")

        if record.status == RunStatus.PAUSED:
            apply_transition(record, RunStatus.ACTIVE, subject="run")
            record.add_log("run_resumed", "Run resumed", at=self._now())
            record.abort_reason = None
            self._emit("run_resumed")
        self._pause.clear()

        if record.pre_run_context and not record.acknowledged_at:
            record.acknowledged_at = self._now()
            record.add_log("context_acknowledged", "Pre-run context acknowledged", at=record.acknowledged_at)
        self._save()

        executed: list[str] = []
        warnings: list[str] = []
        while True:
            phase_name = record.current_phase
            if phase_name is None:
                raise TransitionError("Run has no current phase")
            phase_def = self.definition.phase(phase_name)
            phase = record.phase(phase_name)

            if phase.status == PhaseStatus.PENDING:
                self._start_phase(phase)

            stop = self._run_skills(phase_def, phase, executed, warnings)
            if stop is not None:
                return stop

            if phase_def.gate is not None:
                stop = self._evaluate_gate(phase_def.gate.gate_id, executed, warnings)
                if stop is not None:
                    return stop

            self._complete_phase(phase)
            if record.status == RunStatus.COMPLETED:
                return RunReport(
                    StopReason.COMPLETED,
                    phase=phase.name,
                    message=f"Loop '{record.loop_id}' completed",
                    executed=executed,
                    warnings=warnings,
                )
            if self._pause.is_set():
                return self._pause_now(executed, warnings)

    def request_pause(self) -> None:
        """Ask a running :meth:`run` to checkpoint after the current skill (thread-safe)."""
        self._pause.set()

    def pause(self) -> RunReport:
        if self.record.status == RunStatus.COMPLETED:
            raise TransitionError("Run already completed")
        return self._pause_now([], [])

    def abort(self, reason: str | None = None) -> RunReport:
        """Stop the run; the record stays on disk as paused and can be resumed with ``go``."""
        record = self.record
        if record.status == RunStatus.COMPLETED:
            raise TransitionError("Run already completed")
        text = (reason or "").strip() or "aborted by operator"
        if record.status == RunStatus.ACTIVE:
            apply_transition(record, RunStatus.PAUSED, subject="run")
        record.abort_reason = text
        record.add_log("run_aborted", f"Run aborted: {text}", at=self._now())
        self._emit("run_aborted", reason=text)
        self._save()
        return RunReport(StopReason.ABORTED, phase=record.current_phase, message=f"Run aborted: {text}")

    # ------------------------------------------------------------------
    # Operator directives
    # ------------------------------------------------------------------

    def approve(self, by: str = "operator", *, continue_run: bool = True) -> RunReport:
        """Pass the current phase's human/conditional gate, then keep running."""
        gate_id = self._current_gate_id()
        gate = self.evaluator.approve(gate_id, by=by)
        self.tracker.gate_approved(self.record, gate_id, gate.approved_by or by)
        self._emit("gate_approved", gate=gate_id, by=by)
        self._save()
        if not continue_run:
            return RunReport(StopReason.READY, phase=gate.phase, gate=gate_id, message=f"Gate '{gate_id}' approved")
        return self.run()

    def request_changes(self, feedback: str, target: str | None = None) -> RunReport:
        """Reject the current gate and route the run back for rework."""
        gate_id = self._current_gate_id()
        request = build_rework_request(self.definition, gate_id, feedback, target)
        self.evaluator.reject(request)
        self._apply_rework(request)
        self._emit(
            "rework_requested",
            gate=gate_id,
            target_phase=request.target.phase,
            target_skill=request.target.skill,
            feedback=request.feedback,
        )
        self._save()
        scope = request.target.skill or "all skills"
        return RunReport(
            StopReason.READY,
            phase=request.target.phase,
            gate=gate_id,
            skill=request.target.skill,
            message=f"Rework: phase '{request.target.phase}' ({scope}) reset with feedback",
        )

    def skip_skill(self, skill_id: str, reason: str) -> RunReport:
        text = reason.strip()
        resolved = self.definition.resolve_skill_id(skill_id)
        if resolved is None:
            raise TransitionError(f"Unknown skill '{skill_id}'")
        if not text:
            raise TransitionError(f"skip {resolved} requires a reason")

        phase, state = self.record.locate_skill(resolved)
        if state.status in (SkillStatus.COMPLETED, SkillStatus.SKIPPED):
            raise TransitionError(f"Skill '{resolved}' is already {state.status}")
        apply_transition(state, SkillStatus.SKIPPED, subject=f"skill {resolved}")
        state.reason = text
        state.error = None
        state.completed_at = self._now()

        warnings = self.registry.skip_warnings(resolved)
        self.record.add_log("skill_skipped", f"Skill {resolved} skipped: {text}", subject=resolved, at=state.completed_at)
        for warning in warnings:
            logger.warning(warning)
        self._emit("skill_skipped", skill=resolved, phase=phase.name, reason=text, warnings=warnings)
        self._save()
        return RunReport(
            StopReason.READY,
            phase=phase.name,
            skill=resolved,
            message=f"Skill '{resolved}' skipped",
            warnings=warnings,
        )

    def skip_gate(self, gate_id: str, reason: str) -> RunReport:
        resolved = self.definition.resolve_gate_id(gate_id)
        if resolved is None:
            raise TransitionError(f"Unknown gate '{gate_id}'")
        gate = self.evaluator.skip(resolved, reason)
        self.tracker.gate_approved(self.record, resolved, "skip-gate")
        self._emit("gate_skipped", gate=resolved, reason=gate.skip_reason)
        self._save()
        return RunReport(StopReason.READY, phase=gate.phase, gate=resolved, message=f"Gate '{resolved}' skipped")

    def jump(self, phase_name: str) -> RunReport:
        """Make *phase_name* current, bypassing normal ordering (recovery only).

        A completed target is reopened with its skills and gate reset.
        Phases jumped over stay as they are.
        """
        record = self.record
        resolved = self.definition.resolve_phase_name(phase_name)
        if resolved is None:
            raise TransitionError(
                f"Unknown phase '{phase_name}'. Known phases: {', '.join(self.definition.phase_names)}"
            )
        if record.status == RunStatus.COMPLETED:
            raise TransitionError("Run already completed")

        target = record.phase(resolved)
        if target.status == PhaseStatus.COMPLETED:
            self._reopen_phase(self.definition.phase(resolved), target, feedback=None)
        elif target.status == PhaseStatus.PENDING:
            self._start_phase(target, save=False)

        warnings: list[str] = []
        current = record.current_phase
        if current is not None:
            start = record.phase_index(current)
            end = record.phase_index(resolved)
            for state in record.phases[start:end]:
                if state.status != PhaseStatus.COMPLETED:
                    warnings.append(f"Phase '{state.name}' bypassed while {state.status}")

        record.current_phase = resolved
        record.add_log("phase_jump", f"Jumped from {current} to {resolved}", subject=resolved, at=self._now())
        self._emit("phase_jump", from_phase=current, to_phase=resolved, bypassed=warnings)
        self._save()
        return RunReport(StopReason.READY, phase=resolved, message=f"Current phase is now '{resolved}'", warnings=warnings)

    def show(self, name: str) -> Deliverable:
        deliverable = self.record.deliverables.get(name)
        if deliverable is None:
            folded = [d for n, d in self.record.deliverables.items() if n.casefold() == name.casefold()]
            if len(folded) == 1:
                return folded[0]
            known = ", ".join(sorted(self.record.deliverables)) or "none yet"
            raise LoopworkError(f"No deliverable named '{name}'. Available: {known}")
        return deliverable

    def set_gate_enabled(self, gate_id: str | None, enabled: bool) -> list[str]:
        """Enable or disable one gate, or every gate when *gate_id* is ``None``."""
        changed = [self.evaluator.set_enabled(g, enabled).gate_id for g in self._gate_ids(gate_id)]
        self.record.add_log(
            "gates_enabled" if enabled else "gates_disabled",
            f"{'Enabled' if enabled else 'Disabled'} gate(s): {', '.join(changed)}",
            at=self._now(),
        )
        self._save()
        return changed

    def set_gate_type(self, gate_id: str | None, approval_type: ApprovalType | None) -> list[str]:
        """Override the approval type (``None`` restores the declared type)."""
        changed = [self.evaluator.set_type_override(g, approval_type).gate_id for g in self._gate_ids(gate_id)]
        label = str(approval_type) if approval_type else "declared type"
        self.record.add_log("gates_retyped", f"Gate(s) {', '.join(changed)} set to {label}", at=self._now())
        self._save()
        return changed

    def summary(self) -> dict[str, Any]:
        """Read-only progress counts for ``status``."""
        record = self.record
        skills = [s for p in record.phases for s in p.skills]
        gates = list(record.gates.values())
        awaiting = next((g.gate_id for g in gates if g.awaiting_operator), None)
        failing = next((g.gate_id for g in gates if g.last_failures and not g.is_satisfied), None)
        return {
            "loop": record.loop_id,
            "run_id": record.run_id,
            "status": str(record.status),
            "current_phase": record.current_phase,
            "item": record.current_item,
            "items": record.iteration.to_dict() if record.iteration else None,
            "phases": {
                "completed": sum(1 for p in record.phases if p.status == PhaseStatus.COMPLETED),
                "total": len(record.phases),
            },
            "skills": {
                "completed": sum(1 for s in skills if s.status == SkillStatus.COMPLETED),
                "skipped": sum(1 for s in skills if s.status == SkillStatus.SKIPPED),
                "failed": sum(1 for s in skills if s.status == SkillStatus.FAILED),
                "total": len(skills),
            },
            "gates": {
                "passed": sum(1 for g in gates if g.status == GateStatus.PASSED),
                "skipped": sum(1 for g in gates if g.status == GateStatus.SKIPPED),
                "pending": sum(1 for g in gates if g.status == GateStatus.PENDING),
                "total": len(gates),
            },
            "awaiting_approval": awaiting,
            "failing_gate": failing,
            "deliverables": sorted(record.deliverables),
            "remote": {
                "execution_id": record.remote_execution_id,
                "degraded": self.tracker.degraded,
            },
            "abort_reason": record.abort_reason,
            "pre_run_context": record.pre_run_context,
            "acknowledged": record.acknowledged_at is not None,
            "updated_at": record.updated_at,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_skills(
        self,
        phase_def: PhaseDef,
        phase: PhaseState,
        executed: list[str],
        warnings: list[str],
    ) -> RunReport | None:
        pending = [state for state in phase.skills if not state.is_terminal]
        if not pending:
            return None

        if phase_def.parallel and len(pending) > 1:
            return self._run_parallel(phase, pending, executed, warnings)

        for state in pending:
            if self._pause.is_set():
                return self._pause_now(executed, warnings)
            result = self._invoke(phase, state, warnings)
            executed.append(state.skill_id)
            if not result.ok:
                return self._failure_report(phase, [result], executed, warnings)
        return None

    def _run_parallel(
        self,
        phase: PhaseState,
        pending: list[SkillState],
        executed: list[str],
        warnings: list[str],
    ) -> RunReport | None:
        jobs = []
        for state in pending:
            warnings.extend(self._prepare(state))
            jobs.append((state, self.registry.inputs_for(state.skill_id), state.feedback))
        self._save()

        workers = self.max_workers or len(jobs)
        logger.info("Running %d skill(s) of phase %s in parallel", len(jobs), phase.name)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="loopwork-skill") as pool:
            futures = [
                pool.submit(self._call_executor, state.skill_id, inputs, feedback)
                for state, inputs, feedback in jobs
            ]
            results = [future.result() for future in futures]

        # join complete; results are applied on this thread only
        for (state, _, _), result in zip(jobs, results):
            self._apply_result(phase, state, result, warnings)
            executed.append(state.skill_id)

        failed = [result for result in results if not result.ok]
        if failed:
            return self._failure_report(phase, failed, executed, warnings)
        if self._pause.is_set():
            return self._pause_now(executed, warnings)
        return None

    def _prepare(self, state: SkillState) -> list[str]:
        dependency_warnings = self.registry.dependency_warnings(state.skill_id)
        for warning in dependency_warnings:
            logger.warning(warning)
        if state.status != SkillStatus.IN_PROGRESS:
            apply_transition(state, SkillStatus.IN_PROGRESS, subject=f"skill {state.skill_id}")
        state.attempts += 1
        state.error = None
        state.started_at = self._now()
        return dependency_warnings

    def _invoke(self, phase: PhaseState, state: SkillState, warnings: list[str]) -> SkillResult:
        warnings.extend(self._prepare(state))
        self._emit("skill_started", skill=state.skill_id, phase=phase.name, attempt=state.attempts)
        self._save()
        result = self._call_executor(state.skill_id, self.registry.inputs_for(state.skill_id), state.feedback)
        self._apply_result(phase, state, result, warnings)
        return result

    def _call_executor(self, skill_id: str, inputs: Mapping[str, Deliverable], feedback: str | None) -> SkillResult:
        return self.executor.invoke(
            skill_id,
            inputs,
            run_id=self.record.run_id,
            run_dir=self.run_dir,
            item=self.record.current_item,
            feedback=feedback,
        )

    def _apply_result(self, phase: PhaseState, state: SkillState, result: SkillResult, warnings: list[str]) -> None:
        warnings.extend(result.warnings)
        if result.metrics:
            self.record.metrics.update(result.metrics)
        if result.ok:
            self.registry.register(state.skill_id, result.outputs)
            state.outputs = list(result.outputs)
            state.completed_at = self._now()
            state.feedback = None
            apply_transition(state, SkillStatus.COMPLETED, subject=f"skill {state.skill_id}")
            self.tracker.skill_completed(self.record, state.skill_id, state.outputs, state.attempts)
            self._emit("skill_completed", skill=state.skill_id, phase=phase.name, outputs=state.outputs)
        else:
            apply_transition(state, SkillStatus.FAILED, subject=f"skill {state.skill_id}")
            state.error = result.error
            self.record.add_log(
                "skill_failed",
                f"Skill {state.skill_id} failed (attempt {state.attempts}): {result.error}",
                subject=state.skill_id,
                at=self._now(),
            )
            self._emit("skill_failed", skill=state.skill_id, phase=phase.name, error=result.error)
        self._save()

    def _failure_report(
        self,
        phase: PhaseState,
        failed: list[SkillResult],
        executed: list[str],
        warnings: list[str],
    ) -> RunReport:
        first = failed[0]
        detail = "; ".join(f"{r.skill_id}: {r.error}" for r in failed)
        return RunReport(
            StopReason.SKILL_FAILED,
            phase=phase.name,
            skill=first.skill_id,
            message=f"Skill failure blocks phase '{phase.name}': {detail}",
            executed=executed,
            warnings=warnings,
        )

    def _evaluate_gate(self, gate_id: str, executed: list[str], warnings: list[str]) -> RunReport | None:
        outcome = self.evaluator.evaluate(gate_id)
        gate = self.record.gates[gate_id]
        if outcome.newly_passed:
            self.tracker.gate_approved(self.record, gate_id, gate.approved_by or "auto")
            self._emit("gate_passed", gate=gate_id, by=gate.approved_by, note=outcome.note)
        self._save()
        if outcome.satisfied:
            return None

        if outcome.verdict == GateVerdict.CHECKS_FAILED:
            failed = [result.name for result in outcome.failures]
            self._emit("gate_checks_failed", gate=gate_id, failed=failed, attempt=gate.attempts)
            return RunReport(
                StopReason.GATE_CHECKS_FAILED,
                phase=gate.phase,
                gate=gate_id,
                message=(
                    f"Gate '{gate_id}': {len(failed)} of {len(outcome.results)} check(s) failed "
                    f"({', '.join(failed)})"
                ),
                executed=executed,
                warnings=warnings,
                failed_checks=failed,
                report_ref=outcome.report.ref if outcome.report else None,
            )

        self._emit("gate_awaiting_approval", gate=gate_id, note=outcome.note)
        return RunReport(
            StopReason.AWAITING_APPROVAL,
            phase=gate.phase,
            gate=gate_id,
            message=f"Gate '{gate_id}' awaits approval" + (f" ({outcome.note})" if outcome.note else ""),
            executed=executed,
            warnings=warnings,
        )

    def _start_phase(self, phase: PhaseState, *, save: bool = True) -> None:
        apply_transition(phase, PhaseStatus.IN_PROGRESS, subject=f"phase {phase.name}")
        phase.started_at = self._now()
        self._emit("phase_started", phase=phase.name, item=self.record.current_item)
        if save:
            self._save()

    def _complete_phase(self, phase: PhaseState) -> None:
        record = self.record
        if phase.status != PhaseStatus.COMPLETED:
            apply_transition(phase, PhaseStatus.COMPLETED, subject=f"phase {phase.name}")
            phase.completed_at = self._now()
            self.tracker.phase_completed(record, phase.name)
            self._emit("phase_completed", phase=phase.name, item=record.current_item)

        next_name = self.definition.next_phase(phase.name)
        if next_name is not None:
            self.tracker.phase_advanced(record, phase.name, next_name)
            record.current_phase = next_name
            self._emit("phase_advanced", from_phase=phase.name, to_phase=next_name)
            self._save()
            return
        self._finish_pass(phase.name)

    def _finish_pass(self, last_phase: str) -> None:
        record = self.record
        iteration = record.iteration
        while iteration is not None:
            finished = iteration.current
            upcoming = iteration.advance()
            if finished is not None:
                record.add_log("item_completed", f"Work item {finished} completed", subject=finished, at=self._now())
                self._emit("item_completed", item=finished, remaining=len(iteration.remaining))
            if upcoming is None:
                break
            first = self._reset_for_next_item()
            if first is not None:
                self.tracker.phase_advanced(record, last_phase, first)
                record.current_phase = first
                self._emit("item_started", item=upcoming, phase=first)
                self._save()
                return
            logger.warning("Every phase runs once; work item %s has nothing to execute", upcoming)

        apply_transition(record, RunStatus.COMPLETED, subject="run")
        self.tracker.phase_advanced(record, last_phase, None)
        record.add_log("run_completed", f"Loop {record.loop_id} completed", at=self._now())
        self._emit("run_completed")
        self._save()
        if self.on_complete is not None:
            self.on_complete(record)

    def _reset_for_next_item(self) -> str | None:
        """Reset everything not marked ``once``; return the first phase to run."""
        for phase_def in self.definition.phases:
            if phase_def.once:
                continue
            phase = self.record.phase(phase_def.name)
            for skill_def in phase_def.skills:
                if skill_def.once:
                    continue
                state = phase.skill(skill_def.skill_id)
                if state is not None:
                    self._reset_skill(state, feedback=None)
            if phase_def.gate is not None and not phase_def.gate.once:
                self._reset_gate(self.record.gates[phase_def.gate.gate_id])
            apply_transition(phase, PhaseStatus.PENDING, subject=f"phase {phase.name}")
            phase.started_at = None
            phase.completed_at = None
            phase.deliverables = []

        for phase in self.record.phases:
            if phase.status != PhaseStatus.COMPLETED:
                return phase.name
        return None

    def _apply_rework(self, request: ReworkRequest) -> None:
        record = self.record
        target_index = self.definition.phase_index(request.target.phase)
        gate_phase, _ = self.definition.gate(request.gate_id)
        gate_index = self.definition.phase_index(gate_phase.name)

        target_def = self.definition.phases[target_index]
        target = record.phase(target_def.name)
        if request.target.skill is not None:
            state = target.skill(request.target.skill)
            if state is None:
                raise ReworkError(f"Skill '{request.target.skill}' is not part of phase '{target.name}'")
            self._reset_skill(state, feedback=request.feedback)
            if target.status != PhaseStatus.IN_PROGRESS:
                apply_transition(target, PhaseStatus.IN_PROGRESS, subject=f"phase {target.name}")
            target.completed_at = None
        else:
            self._reopen_phase(target_def, target, feedback=request.feedback)
        if target_def.gate is not None and target_def.gate.gate_id != request.gate_id:
            self._reset_gate(record.gates[target_def.gate.gate_id])

        for phase_def in self.definition.phases[target_index + 1:gate_index + 1]:
            phase = record.phase(phase_def.name)
            for state in phase.skills:
                self._reset_skill(state, feedback=None)
            if phase_def.gate is not None and phase_def.gate.gate_id != request.gate_id:
                self._reset_gate(record.gates[phase_def.gate.gate_id])
            apply_transition(phase, PhaseStatus.PENDING, subject=f"phase {phase.name}")
            phase.started_at = None
            phase.completed_at = None

        record.current_phase = target.name
        record.add_log(
            "rework",
            f"Rework routed to {request.target} from gate {request.gate_id}",
            subject=request.gate_id,
            at=self._now(),
        )

    def _reopen_phase(self, phase_def: PhaseDef, phase: PhaseState, feedback: str | None) -> None:
        for state in phase.skills:
            self._reset_skill(state, feedback=feedback)
        if phase_def.gate is not None:
            self._reset_gate(self.record.gates[phase_def.gate.gate_id])
        if phase.status != PhaseStatus.IN_PROGRESS:
            apply_transition(phase, PhaseStatus.IN_PROGRESS, subject=f"phase {phase.name}")
        phase.started_at = phase.started_at or self._now()
        phase.completed_at = None

    def _reset_skill(self, state: SkillState, feedback: str | None) -> None:
        apply_transition(state, SkillStatus.PENDING, subject=f"skill {state.skill_id}")
        state.reset(feedback=feedback)

    def _reset_gate(self, gate: GateState) -> None:
        apply_transition(gate, GateStatus.PENDING, subject=f"gate {gate.gate_id}")
        gate.reset()

    def _pause_now(self, executed: list[str], warnings: list[str]) -> RunReport:
        record = self.record
        if record.status == RunStatus.ACTIVE:
            apply_transition(record, RunStatus.PAUSED, subject="run")
            record.add_log("run_paused", f"Run paused in phase {record.current_phase}", at=self._now())
            self._emit("run_paused", phase=record.current_phase)
        self._pause.clear()
        self._save()
        return RunReport(
            StopReason.PAUSED,
            phase=record.current_phase,
            message="Run paused; 'go' resumes from the checkpoint",
            executed=executed,
            warnings=warnings,
        )

    def _current_gate_id(self) -> str:
        phase_name = self.record.current_phase
        if phase_name is None:
            raise TransitionError("Run has no current phase")
        gate = self.definition.phase(phase_name).gate
        if gate is None:
            raise TransitionError(f"Phase '{phase_name}' has no gate")
        return gate.gate_id

    def _gate_ids(self, gate_id: str | None) -> list[str]:
        if gate_id is None:
            return list(self.record.gates)
        resolved = self.definition.resolve_gate_id(gate_id)
        if resolved is None:
            raise TransitionError(f"Unknown gate '{gate_id}'")
        return [resolved]

    def _now(self) -> str:
        return to_iso(self.clock())

    def _save(self) -> None:
        self.record.updated_at = self._now()
        self.store.save(self.record)

    def _emit(self, event_type: str, **payload: Any) -> None:
        emit_event(
            event_type,
            payload,
            loop_id=self.record.loop_id,
            run_id=self.record.run_id,
            run_dir=self.run_dir,
        )
