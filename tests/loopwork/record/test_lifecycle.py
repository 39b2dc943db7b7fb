"""Unit tests for the status transition tables."""

from __future__ import annotations

import pytest

from loopwork.errors import TransitionError
from loopwork.record.lifecycle import apply_transition, validate_transition
from loopwork.record.models import GateState, GateStatus, ApprovalType, PhaseStatus, RunStatus, SkillState, SkillStatus


class TestValidateTransition:
    @pytest.mark.parametrize(
        "current,target",
        [
            (SkillStatus.PENDING, SkillStatus.IN_PROGRESS),
            (SkillStatus.FAILED, SkillStatus.IN_PROGRESS),
            (SkillStatus.COMPLETED, SkillStatus.PENDING),
            (PhaseStatus.COMPLETED, PhaseStatus.IN_PROGRESS),
            (GateStatus.PENDING, GateStatus.REJECTED),
            (GateStatus.REJECTED, GateStatus.PENDING),
            (RunStatus.PAUSED, RunStatus.ACTIVE),
        ],
    )
    def test_legal(self, current, target) -> None:
        assert validate_transition(current, target) == (True, None)

    @pytest.mark.parametrize(
        "current,target",
        [
            (SkillStatus.PENDING, SkillStatus.COMPLETED),
            (SkillStatus.SKIPPED, SkillStatus.COMPLETED),
            (PhaseStatus.PENDING, PhaseStatus.COMPLETED),
            (GateStatus.REJECTED, GateStatus.PASSED),
            (RunStatus.COMPLETED, RunStatus.ACTIVE),
        ],
    )
    def test_illegal(self, current, target) -> None:
        ok, error = validate_transition(current, target)
        assert ok is False
        assert f"{current} -> {target}" in error

    def test_same_status_is_noop(self) -> None:
        assert validate_transition(PhaseStatus.PENDING, PhaseStatus.PENDING) == (True, None)

    def test_mixed_enums_rejected(self) -> None:
        ok, _ = validate_transition(SkillStatus.PENDING, PhaseStatus.PENDING)
        assert ok is False


class TestApplyTransition:
    def test_sets_status(self) -> None:
        state = SkillState("write")
        apply_transition(state, SkillStatus.IN_PROGRESS)
        assert state.status == SkillStatus.IN_PROGRESS

    def test_raises_with_subject(self) -> None:
        gate = GateState("review", "draft", ApprovalType.HUMAN, status=GateStatus.REJECTED)
        with pytest.raises(TransitionError, match="gate review"):
            apply_transition(gate, GateStatus.PASSED, subject="gate review")
        assert gate.status == GateStatus.REJECTED
