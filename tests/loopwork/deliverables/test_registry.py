"""Tests for the deliverable registry."""

from __future__ import annotations

import pytest

from loopwork.definition.builder import LoopBuilder
from loopwork.definition.models import LoopDefinition
from loopwork.deliverables.registry import SEED_PRODUCER, DeliverableRegistry
from loopwork.record.models import ExecutionRecord, GateStatus, SkillStatus
from loopwork.scheduler.engine import new_record


@pytest.fixture
def loop() -> LoopDefinition:
    return (
        LoopBuilder("docs")
        .seed("brief")
        .phase("draft")
        .skill("outline", inputs=["brief"], outputs=["outline"])
        .skill("write", inputs=["outline"], outputs=["draft"], durable=False)
        .gate("review", "human", inputs=["draft"])
        .phase("publish")
        .skill("render", inputs=["draft", "outline"], outputs=["site"])
        .build()
    )


@pytest.fixture
def record(loop: LoopDefinition) -> ExecutionRecord:
    return new_record(loop, run_id="01RUN")


class TestRegister:
    def test_register_outputs(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        [created] = registry.register("write", {"draft": "out/draft.md"})
        assert created.producer == "write"
        assert created.phase == "draft"
        assert created.durable is False
        assert created.version == 1
        assert record.phase("draft").deliverables == ["draft"]

    def test_rerun_supersedes_previous_version(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        registry.register("write", {"draft": "v1.md"})
        registry.register("write", {"draft": "v2.md"})
        assert registry.get("draft").version == 2
        assert registry.get("draft").ref == "v2.md"
        assert [d.ref for d in record.superseded] == ["v1.md"]
        assert record.phase("draft").deliverables == ["draft"]

    def test_seeds(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        [seed] = registry.register_seeds({"brief": "brief.md"})
        assert seed.producer == SEED_PRODUCER
        assert seed.phase is None

    def test_records_current_item(self, loop: LoopDefinition) -> None:
        record = new_record(loop, items=["alpha"], run_id="01RUN")
        [created] = DeliverableRegistry(loop, record).register("outline", {"outline": None})
        assert created.item == "alpha"


class TestQueries:
    def test_dependents_in_chain_order(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        assert registry.dependents("draft") == ["review", "render"]
        assert registry.dependents("outline") == ["write", "render"]
        assert registry.dependents("site") == []

    def test_inputs_and_missing_inputs(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        registry.register("outline", {"outline": "o.md"})
        assert list(registry.inputs_for("render")) == ["outline"]
        assert registry.missing_inputs("render") == ["draft"]

    def test_skip_warnings_name_pending_consumers(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        registry = DeliverableRegistry(loop, record)
        [warning] = registry.skip_warnings("write")
        assert "'draft'" in warning
        assert "review, render" in warning

    def test_skip_warnings_ignore_finished_consumers(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        record.gates["review"].status = GateStatus.PASSED
        _, render = record.locate_skill("render")
        render.status = SkillStatus.COMPLETED
        assert DeliverableRegistry(loop, record).skip_warnings("write") == []

    def test_dependency_warning_mentions_skipped_producer(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        _, write = record.locate_skill("write")
        write.status = SkillStatus.SKIPPED
        write.reason = "drafted by hand"
        registry = DeliverableRegistry(loop, record)
        registry.register("outline", {"outline": "o.md"})
        [warning] = registry.dependency_warnings("render")
        assert "producer 'write' was skipped (drafted by hand)" in warning

    def test_dependency_warning_for_missing_seed(self, loop: LoopDefinition, record: ExecutionRecord) -> None:
        [warning] = DeliverableRegistry(loop, record).dependency_warnings("outline")
        assert warning == "Input 'brief' for 'outline' was never supplied"
