"""Tests for execution record persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from loopwork.definition.builder import LoopBuilder
from loopwork.errors import StateCorruption
from loopwork.record.models import Deliverable, ExecutionRecord, SkillStatus
from loopwork.record.store import (
    RECORD_FILENAME,
    FileRecordStore,
    MemoryRecordStore,
    parse_record,
    serialize_record,
)
from loopwork.scheduler.engine import new_record


def _record() -> ExecutionRecord:
    loop = (
        LoopBuilder("release")
        .seed("brief")
        .phase("draft")
        .skill("write", handler="pkg.mod:write", inputs=["brief"], outputs=["notes"])
        .gate("review", "human")
        .phase("publish")
        .skill("ship", handler="pkg.mod:ship", inputs=["notes"])
        .build()
    )
    record = new_record(loop, items=["a", "b"], run_id="01TESTRUN")
    record.deliverables["brief"] = Deliverable(name="brief", producer="seed", phase=None, ref="brief.md")
    record.phases[0].skills[0].status = SkillStatus.IN_PROGRESS
    record.phases[0].skills[0].attempts = 1
    record.gates["review"].feedback.append({"at": "2026-01-01T00:00:00+00:00", "text": "more", "target": "draft"})
    record.metrics["coverage"] = 81.5
    record.add_log("run_started", "started", at="2026-01-01T00:00:00+00:00")
    return record


class TestSerialization:
    def test_load_of_save_deep_equals(self) -> None:
        record = _record()
        assert parse_record(serialize_record(record)) == record

    def test_save_of_load_is_byte_identical(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        store.save(_record())
        first = store.path.read_bytes()

        loaded = store.load()
        assert loaded is not None
        store.save(loaded)
        assert store.path.read_bytes() == first

    def test_keys_are_sorted(self) -> None:
        text = serialize_record(_record())
        payload = json.loads(text)
        assert list(payload) == sorted(payload)
        assert text.endswith("\n")


class TestFileRecordStore:
    def test_cold_start_returns_none(self, tmp_path: Path) -> None:
        assert FileRecordStore(tmp_path / ".loopwork").load() is None

    def test_save_creates_state_dir_and_leaves_no_temp_files(self, tmp_path: Path) -> None:
        state = tmp_path / ".loopwork"
        FileRecordStore(state).save(_record())
        assert [p.name for p in state.iterdir()] == [RECORD_FILENAME]

    def test_invalid_json_is_corruption(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateCorruption) as excinfo:
            store.load()
        assert excinfo.value.path == store.path
        assert "invalid JSON" in excinfo.value.reason

    def test_schema_violation_is_corruption_not_partial_record(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        payload = _record().to_dict()
        payload["status"] = "sleeping"
        store.path.write_text(json.dumps(payload), encoding="utf-8")
        with pytest.raises(StateCorruption) as excinfo:
            store.load()
        assert excinfo.value.errors
        assert any("status" in error for error in excinfo.value.errors)

    def test_missing_required_key_is_corruption(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        payload = _record().to_dict()
        del payload["run_id"]
        store.path.write_text(json.dumps(payload), encoding="utf-8")
        with pytest.raises(StateCorruption):
            store.load()

    def test_set_aside_moves_record(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        store.path.write_text("garbage", encoding="utf-8")
        moved = store.set_aside("corrupt")
        assert moved is not None
        assert Path(moved).name.startswith("execution.corrupt-")
        assert Path(moved).read_text(encoding="utf-8") == "garbage"
        assert store.load() is None

    def test_set_aside_without_record(self, tmp_path: Path) -> None:
        assert FileRecordStore(tmp_path).set_aside("abandoned") is None

    def test_delete(self, tmp_path: Path) -> None:
        store = FileRecordStore(tmp_path)
        store.save(_record())
        store.delete()
        store.delete()
        assert not store.exists()


class TestMemoryRecordStore:
    def test_stores_serialized_copy(self) -> None:
        store = MemoryRecordStore()
        record = _record()
        store.save(record)
        record.metrics["coverage"] = 0

        loaded = store.load()
        assert loaded is not None
        assert loaded.metrics["coverage"] == 81.5

    def test_independent_stores_hold_independent_runs(self) -> None:
        first, second = MemoryRecordStore(), MemoryRecordStore()
        record = _record()
        first.save(record)
        record.run_id = "01OTHER"
        second.save(record)
        assert first.load().run_id == "01TESTRUN"
        assert second.load().run_id == "01OTHER"

    def test_corrupt_initial_content(self) -> None:
        with pytest.raises(StateCorruption):
            MemoryRecordStore("[]").load()

    def test_set_aside(self) -> None:
        store = MemoryRecordStore()
        store.save(_record())
        key = store.set_aside("abandoned")
        assert key == "abandoned-1"
        assert store.content is None
        assert "01TESTRUN" in store.set_aside_records[key]
