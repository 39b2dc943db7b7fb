"""Shared fixtures for loopwork engine tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from loopwork.definition.models import LoopDefinition
from loopwork.record.store import MemoryRecordStore
from loopwork.scheduler.engine import PhaseScheduler
from loopwork.skills.executor import SkillContext


@pytest.fixture
def skill_log() -> list[str]:
    """Skill ids in invocation order."""
    return []


@pytest.fixture
def writer(skill_log: list[str]) -> Callable[..., Callable[[SkillContext], dict[str, str]]]:
    """Build a skill handler that writes one file per declared output.

    ``fail_times`` makes the first N invocations raise.
    """

    def factory(*, fail_times: int = 0, metrics: dict[str, Any] | None = None) -> Callable[[SkillContext], dict[str, str]]:
        calls = {"count": 0}

        def handler(context: SkillContext) -> dict[str, str]:
            calls["count"] += 1
            skill_log.append(context.skill_id)
            if calls["count"] <= fail_times:
                raise RuntimeError(f"{context.skill_id} broke")
            if metrics:
                context.metrics.update(metrics)
            produced: dict[str, str] = {}
            for name in context.outputs:
                path = context.output_path(name)
                text = f"{name} from {context.skill_id}"
                if context.feedback:
                    text += f"\nfeedback: {context.feedback}"
                path.write_text(text, encoding="utf-8")
                produced[name] = str(path)
            return produced

        return handler

    return factory


@pytest.fixture
def make_scheduler(tmp_path: Path) -> Callable[..., PhaseScheduler]:
    """Start a fresh run on an in-memory store under ``tmp_path``."""

    def factory(definition: LoopDefinition, **kwargs: Any) -> PhaseScheduler:
        store = kwargs.pop("store", None) or MemoryRecordStore()
        kwargs.setdefault("env", {})
        kwargs.setdefault("run_dir", tmp_path / "run")
        return PhaseScheduler.begin(definition, store, work_dir=tmp_path, **kwargs)

    return factory


@pytest.fixture
def resume(tmp_path: Path) -> Callable[..., PhaseScheduler]:
    """Reload the persisted record as a new session would."""

    def factory(definition: LoopDefinition, store: MemoryRecordStore, **kwargs: Any) -> PhaseScheduler:
        record = store.load()
        assert record is not None
        kwargs.setdefault("env", {})
        return PhaseScheduler(definition, record, store, work_dir=tmp_path, run_dir=tmp_path / "run", **kwargs)

    return factory
