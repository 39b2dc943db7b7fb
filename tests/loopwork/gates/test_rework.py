"""Tests for typed rework requests."""

from __future__ import annotations

import pytest

from loopwork.definition.builder import LoopBuilder
from loopwork.definition.models import LoopDefinition
from loopwork.errors import ReworkError
from loopwork.gates.rework import ReworkTarget, build_rework_request


@pytest.fixture
def loop() -> LoopDefinition:
    return (
        LoopBuilder("docs")
        .phase("research")
        .skill("gather", outputs=["notes"])
        .phase("draft")
        .skill("outline", inputs=["notes"], outputs=["outline"])
        .skill("write", inputs=["outline"], outputs=["draft"])
        .gate("review", "human")
        .phase("publish")
        .skill("render", inputs=["draft"])
        .gate("final", "human")
        .build()
    )


class TestReworkTarget:
    def test_parse_phase_only(self) -> None:
        assert ReworkTarget.parse("draft") == ReworkTarget("draft")

    def test_parse_phase_and_skill(self) -> None:
        target = ReworkTarget.parse(" draft / write ")
        assert target == ReworkTarget("draft", "write")
        assert str(target) == "draft/write"

    def test_parse_empty(self) -> None:
        with pytest.raises(ReworkError):
            ReworkTarget.parse("/write")


class TestBuildReworkRequest:
    def test_defaults_to_gate_phase(self, loop: LoopDefinition) -> None:
        request = build_rework_request(loop, "review", "  need more detail ")
        assert request.feedback == "need more detail"
        assert request.target == ReworkTarget("draft")

    def test_earlier_phase_and_skill_case_insensitive(self, loop: LoopDefinition) -> None:
        request = build_rework_request(loop, "final", "sources are thin", "Research/GATHER")
        assert request.target == ReworkTarget("research", "gather")

    def test_target_after_gate_rejected(self, loop: LoopDefinition) -> None:
        with pytest.raises(ReworkError, match="comes after gate"):
            build_rework_request(loop, "review", "x", "publish")

    def test_unknown_phase(self, loop: LoopDefinition) -> None:
        with pytest.raises(ReworkError, match="Unknown rework phase"):
            build_rework_request(loop, "review", "x", "editing")

    def test_skill_must_belong_to_phase(self, loop: LoopDefinition) -> None:
        with pytest.raises(ReworkError, match="has no skill 'gather'"):
            build_rework_request(loop, "review", "x", "draft/gather")

    def test_empty_feedback(self, loop: LoopDefinition) -> None:
        with pytest.raises(ReworkError, match="must not be empty"):
            build_rework_request(loop, "review", "   ")

    def test_unknown_gate(self, loop: LoopDefinition) -> None:
        with pytest.raises(ReworkError, match="Unknown gate"):
            build_rework_request(loop, "nope", "x")
