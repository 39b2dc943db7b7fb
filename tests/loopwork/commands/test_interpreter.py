"""Tests for directive parsing and dispatch."""

from __future__ import annotations

import pytest

from loopwork.commands.interpreter import (
    USAGE,
    Abort,
    Approve,
    CommandInterpreter,
    Go,
    JumpPhase,
    Pause,
    RequestChanges,
    Show,
    SkipGate,
    SkipSkill,
    Status,
    parse_directive,
)
from loopwork.definition.builder import LoopBuilder
from loopwork.errors import CommandError, TransitionError
from loopwork.record.models import GateStatus
from loopwork.scheduler.report import StopReason


class TestParseDirective:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("go", Go()),
            ("  GO ", Go()),
            ("Status", Status()),
            ("APPROVED", Approve()),
            ("pause", Pause()),
            ("abort", Abort()),
            ("show Draft", Show("Draft")),
            ("phase research", JumpPhase("research")),
        ],
    )
    def test_keywords_are_case_insensitive(self, text: str, expected) -> None:
        assert parse_directive(text) == expected

    def test_changes_keeps_feedback_case(self) -> None:
        assert parse_directive("CHANGES: Tighten The Intro") == RequestChanges("Tighten The Intro")

    def test_changes_with_target(self) -> None:
        directive = parse_directive("changes: need more detail --target draft/write")
        assert directive == RequestChanges("need more detail", target="draft/write")

    def test_changes_quoted_feedback(self) -> None:
        assert parse_directive("changes: 'cite sources'") == RequestChanges("cite sources")

    def test_changes_requires_feedback(self) -> None:
        with pytest.raises(CommandError, match="needs feedback"):
            parse_directive("changes:   ")

    def test_skip_with_reason(self) -> None:
        assert parse_directive("skip write --reason drafted by hand") == SkipSkill("write", "drafted by hand")

    def test_skip_gate_with_quoted_reason(self) -> None:
        assert parse_directive('Skip-Gate review --reason="owner away"') == SkipGate("review", "owner away")

    def test_skip_requires_reason(self) -> None:
        with pytest.raises(CommandError, match="'skip' requires --reason"):
            parse_directive("skip write")

    def test_abort_reason(self) -> None:
        assert parse_directive("abort --reason lunch") == Abort("lunch")

    def test_show_needs_one_argument(self) -> None:
        with pytest.raises(CommandError, match="exactly one argument"):
            parse_directive("show a b")

    def test_unknown_directive_carries_usage(self) -> None:
        with pytest.raises(CommandError) as excinfo:
            parse_directive("frobnicate now")
        assert "Unknown directive 'frobnicate'" in str(excinfo.value)
        assert excinfo.value.usage == USAGE

    def test_empty_input(self) -> None:
        with pytest.raises(CommandError):
            parse_directive("   ")


@pytest.fixture
def interpreter(writer, make_scheduler) -> CommandInterpreter:
    loop = (
        LoopBuilder("docs")
        .phase("draft")
        .skill("write", handler=writer(), outputs=["draft"])
        .gate("review", "human")
        .phase("publish")
        .skill("render", handler=writer(), inputs=["draft"])
        .build()
    )
    return CommandInterpreter(make_scheduler(loop), operator="ana")


class TestExecute:
    def test_go_then_approved(self, interpreter: CommandInterpreter) -> None:
        first = interpreter.handle("go")
        assert first.report.reason == StopReason.AWAITING_APPROVAL

        result = interpreter.handle("approved")

        assert result.report.reason == StopReason.COMPLETED
        assert interpreter.scheduler.record.gates["review"].approved_by == "ana"

    def test_changes_returns_ready(self, interpreter: CommandInterpreter, skill_log: list[str]) -> None:
        interpreter.handle("go")
        result = interpreter.handle("changes: more examples")
        assert result.report.reason == StopReason.READY
        assert interpreter.handle("go").report.reason == StopReason.AWAITING_APPROVAL
        assert skill_log == ["write", "write"]

    def test_status_is_read_only(self, interpreter: CommandInterpreter) -> None:
        before = interpreter.scheduler.record.to_dict()
        result = interpreter.handle("status")
        assert result.status["current_phase"] == "draft"
        assert result.report is None
        assert interpreter.scheduler.record.to_dict() == before

    def test_show_deliverable(self, interpreter: CommandInterpreter) -> None:
        interpreter.handle("go")
        result = interpreter.handle("show draft")
        assert result.deliverable.producer == "write"
        assert result.to_dict()["directive"] == "Show"

    def test_skip_gate(self, interpreter: CommandInterpreter) -> None:
        interpreter.handle("go")
        interpreter.handle("skip-gate review --reason owner away")
        assert interpreter.scheduler.record.gates["review"].status == GateStatus.SKIPPED

    def test_approve_without_pending_gate(self, interpreter: CommandInterpreter) -> None:
        with pytest.raises(TransitionError, match="not awaiting approval"):
            interpreter.handle("approved")

    def test_abort_then_go(self, interpreter: CommandInterpreter) -> None:
        result = interpreter.handle("abort --reason stakeholder away")
        assert result.report.reason == StopReason.ABORTED
        assert result.report.next_actions == ["go"]
        assert interpreter.handle("go").report.reason == StopReason.AWAITING_APPROVAL
