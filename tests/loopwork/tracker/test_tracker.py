"""Tests for best-effort remote mirroring and degraded mode."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx
import pytest

from loopwork.definition.builder import LoopBuilder
from loopwork.definition.models import LoopDefinition
from loopwork.errors import RemoteSyncError
from loopwork.record.models import ExecutionRecord, PhaseStatus, SkillStatus
from loopwork.record.store import MemoryRecordStore
from loopwork.scheduler.report import StopReason
from loopwork.tracker.client import HttpCoordinationClient
from loopwork.tracker.tracker import ExecutionTracker
from loopwork.scheduler.engine import new_record


class FakeClient:
    enabled = True

    def __init__(self, failures: list[RemoteSyncError | None] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[tuple[str, tuple[Any, ...], str]] = []

    def _next(self, name: str, args: tuple[Any, ...], key: str) -> None:
        self.calls.append((name, args, key))
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error

    def start_execution(self, loop_id: str, project: str, *, key: str) -> dict[str, Any]:
        self._next("start", (loop_id, project), key)
        return {"id": "exec-9", "preLoopContext": {"lessons": ["keep drafts short"]}}

    def complete_skill(self, execution_id, skill_id, deliverables, *, key):
        self._next("skill", (execution_id, skill_id, tuple(deliverables)), key)

    def complete_phase(self, execution_id, phase, *, key):
        self._next("phase", (execution_id, phase), key)

    def approve_gate(self, execution_id, gate_id, approved_by, *, key):
        self._next("gate", (execution_id, gate_id, approved_by), key)

    def advance_phase(self, execution_id, from_phase, to_phase, *, key):
        self._next("advance", (execution_id, from_phase, to_phase), key)


def _loop() -> LoopDefinition:
    return (
        LoopBuilder("demo")
        .phase("one")
        .skill("a", outputs=["x"])
        .phase("two")
        .skill("b", inputs=["x"])
        .build()
    )


def _record() -> ExecutionRecord:
    return new_record(_loop(), run_id="01RUN")


TRANSIENT = RemoteSyncError("HTTP 503", status_code=503)


class TestStart:
    def test_links_remote_execution_and_context(self) -> None:
        client = FakeClient()
        record = _record()
        context = ExecutionTracker(client, project="acme").start(record)
        assert record.remote_execution_id == "exec-9"
        assert context == {"lessons": ["keep drafts short"]}
        assert client.calls[0][1] == ("demo", "acme")

    def test_never_recreates_existing_execution(self) -> None:
        client = FakeClient()
        record = _record()
        record.remote_execution_id = "exec-1"
        assert ExecutionTracker(client).start(record) is None
        assert client.calls == []

    def test_failed_start_leaves_run_local(self) -> None:
        client = FakeClient([TRANSIENT, TRANSIENT, TRANSIENT])
        record = _record()
        tracker = ExecutionTracker(client, sleep=lambda s: None)
        assert tracker.start(record) is None
        assert record.remote_execution_id is None
        assert tracker.degraded

    def test_disabled_client_is_noop(self) -> None:
        record = _record()
        tracker = ExecutionTracker()
        assert not tracker.enabled
        assert tracker.start(record) is None
        assert tracker.phase_completed(record, "one") is False


class TestRetries:
    def test_retries_transient_errors_with_fixed_delay(self) -> None:
        client = FakeClient([TRANSIENT, TRANSIENT, None])
        sleeps: list[float] = []
        record = _record()
        record.remote_execution_id = "exec-1"
        tracker = ExecutionTracker(client, retry_delay=0.25, sleep=sleeps.append)

        assert tracker.phase_completed(record, "one") is True
        assert sleeps == [0.25, 0.25]
        assert len({key for _, _, key in client.calls}) == 1
        assert not tracker.degraded

    def test_permanent_error_is_not_retried(self) -> None:
        client = FakeClient([RemoteSyncError("HTTP 400", status_code=400, transient=False)])
        record = _record()
        record.remote_execution_id = "exec-1"
        tracker = ExecutionTracker(client, sleep=lambda s: None)
        assert tracker.gate_approved(record, "g", "ana") is False
        assert len(client.calls) == 1
        assert tracker.failed_events == ["gate-approve"]

    def test_degraded_mode_single_attempt_then_restored(self, caplog: pytest.LogCaptureFixture) -> None:
        client = FakeClient([TRANSIENT, TRANSIENT, TRANSIENT, TRANSIENT, None])
        record = _record()
        record.remote_execution_id = "exec-1"
        tracker = ExecutionTracker(client, sleep=lambda s: None)

        with caplog.at_level(logging.INFO, logger="loopwork.tracker.tracker"):
            assert tracker.skill_completed(record, "a", ["x"], 1) is False
            assert tracker.degraded
            assert tracker.phase_completed(record, "one") is False
            assert len(client.calls) == 4
            assert tracker.phase_advanced(record, "one", "two") is True

        assert not tracker.degraded
        messages = [r.getMessage() for r in caplog.records]
        assert sum("degraded" in m for m in messages) == 1
        assert any("restored" in m for m in messages)

    def test_degraded_state_survives_a_new_invocation(self) -> None:
        record = _record()
        record.remote_execution_id = "exec-1"
        first = ExecutionTracker(FakeClient([TRANSIENT, TRANSIENT, TRANSIENT]), sleep=lambda s: None)
        assert first.phase_completed(record, "one") is False
        assert record.remote_degraded

        reloaded = ExecutionRecord.from_dict(record.to_dict())
        client = FakeClient([TRANSIENT])
        second = ExecutionTracker(client, sleep=lambda s: None)

        assert second.phase_advanced(reloaded, "one", "two") is False
        assert len(client.calls) == 1
        assert second.phase_advanced(reloaded, "one", "two") is True
        assert not reloaded.remote_degraded


class TestClose:
    def test_close_releases_http_client(self) -> None:
        client = HttpCoordinationClient("https://coord.example.com", transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        ExecutionTracker(client).close()
        assert client._client.is_closed

    def test_close_without_remote_is_noop(self) -> None:
        ExecutionTracker().close()


class TestScenarioD:
    def test_engine_advances_while_remote_is_down(
        self, tmp_path: Path, writer, make_scheduler, skill_log, caplog: pytest.LogCaptureFixture
    ) -> None:
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(f"{request.method} {request.url.path}")
            if request.method == "POST":
                return httpx.Response(201, json={"id": "exec-7"})
            return httpx.Response(503, json={"error": "unavailable"})

        client = HttpCoordinationClient("https://coord.example.com", transport=httpx.MockTransport(handler))
        tracker = ExecutionTracker(client, project="acme", sleep=lambda s: None)
        loop = (
            LoopBuilder("demo")
            .phase("one")
            .skill("a", handler=writer(), outputs=["x"])
            .phase("two")
            .skill("b", handler=writer(), inputs=["x"])
            .build()
        )

        with caplog.at_level(logging.WARNING):
            scheduler = make_scheduler(loop, tracker=tracker)
            report = scheduler.run()

        assert report.reason == StopReason.COMPLETED
        assert skill_log == ["a", "b"]
        assert all(phase.status == PhaseStatus.COMPLETED for phase in scheduler.record.phases)
        assert scheduler.record.remote_execution_id == "exec-7"
        assert requests[1:4] == ["PUT /api/executions/exec-7/skills/a/complete"] * 3
        assert tracker.degraded
        assert any("degraded" in r.getMessage() for r in caplog.records)

    def test_malformed_json_reply_is_a_sync_failure(self, writer, make_scheduler) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(201, json={"id": "exec-1"})
            return httpx.Response(200, headers={"content-type": "application/json"}, content=b"<html>proxy</html>")

        client = HttpCoordinationClient("https://coord.example.com", transport=httpx.MockTransport(handler))
        tracker = ExecutionTracker(client, sleep=lambda s: None)
        store = MemoryRecordStore()
        loop = LoopBuilder("demo").phase("one").skill("a", handler=writer(), outputs=["x"]).build()

        report = make_scheduler(loop, tracker=tracker, store=store).run()

        assert report.reason == StopReason.COMPLETED
        persisted = store.load()
        assert persisted is not None
        assert persisted.locate_skill("a")[1].status == SkillStatus.COMPLETED
        assert tracker.degraded

    def test_unexpected_client_error_does_not_escape(self) -> None:
        class BrokenClient(FakeClient):
            def complete_phase(self, execution_id, phase, *, key):
                raise KeyError("phase")

        client = BrokenClient()
        record = _record()
        record.remote_execution_id = "exec-1"
        tracker = ExecutionTracker(client, sleep=lambda s: None)

        assert tracker.phase_completed(record, "one") is False
        assert tracker.failed_events == ["phase-complete"]
        assert tracker.degraded
