"""Tests for the skill invocation boundary."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from loopwork.definition.builder import LoopBuilder
from loopwork.errors import DefinitionError, SkillFailure
from loopwork.record.models import Deliverable
from loopwork.skills.executor import SkillContext, SkillExecutor, resolve_handler


def _executor(tmp_path: Path, handler, **kwargs) -> SkillExecutor:
    loop = (
        LoopBuilder("demo")
        .seed("brief")
        .phase("draft")
        .skill("write", handler=handler, inputs=["brief"], outputs=["notes", "summary"])
        .build()
    )
    return SkillExecutor(loop, tmp_path, **kwargs)


BRIEF = {"brief": Deliverable(name="brief", producer="seed", phase=None, ref="brief.md")}


class TestResolveHandler:
    def test_module_reference(self) -> None:
        assert resolve_handler("os.path:join") is os.path.join

    def test_nested_attribute(self) -> None:
        assert resolve_handler("pathlib:Path.cwd") == Path.cwd

    @pytest.mark.parametrize("reference", ["nocolon", "no_such_module_xyz:run", "os:no_such_function"])
    def test_unresolvable(self, reference: str) -> None:
        with pytest.raises(DefinitionError):
            resolve_handler(reference)


class TestInvoke:
    def test_context_and_outputs(self, tmp_path: Path) -> None:
        seen: list[SkillContext] = []

        def handler(context: SkillContext) -> dict[str, str]:
            seen.append(context)
            context.metrics["words"] = 120
            return {"notes": "notes.md", "summary": "summary.md"}

        result = _executor(tmp_path, handler).invoke(
            "write", BRIEF, run_id="01RUN", item="api", feedback="tighter"
        )

        assert result.ok
        assert result.outputs == {"notes": "notes.md", "summary": "summary.md"}
        assert result.metrics == {"words": 120}
        context = seen[0]
        assert context.phase == "draft"
        assert context.inputs["brief"].ref == "brief.md"
        assert context.item == "api"
        assert context.feedback == "tighter"

    def test_undeclared_output_ignored_and_missing_output_warned(self, tmp_path: Path) -> None:
        result = _executor(tmp_path, lambda ctx: {"notes": "n.md", "extra": "e.md"}).invoke("write", BRIEF)
        assert result.ok
        assert result.outputs == {"notes": "n.md"}
        assert len(result.warnings) == 2

    def test_exception_becomes_failure(self, tmp_path: Path) -> None:
        def handler(context: SkillContext) -> None:
            raise ValueError("boom")

        result = _executor(tmp_path, handler).invoke("write", BRIEF)
        assert not result.ok
        assert result.error == "ValueError: boom"
        with pytest.raises(SkillFailure, match="boom"):
            result.raise_for_failure()

    def test_non_mapping_return_is_failure(self, tmp_path: Path) -> None:
        result = _executor(tmp_path, lambda ctx: ["notes"]).invoke("write", BRIEF)
        assert not result.ok
        assert "expected a mapping" in result.error

    def test_unresolvable_handler_is_failure(self, tmp_path: Path) -> None:
        result = _executor(tmp_path, "no_such_module_xyz:write").invoke("write", BRIEF)
        assert not result.ok
        assert "no_such_module_xyz" in result.error

    def test_missing_handler(self, tmp_path: Path) -> None:
        result = _executor(tmp_path, None).invoke("write", BRIEF)
        assert result.error == "No handler registered for skill 'write'"

    def test_override_takes_precedence(self, tmp_path: Path) -> None:
        executor = _executor(tmp_path, "no_such_module_xyz:write", handlers={"write": lambda ctx: None})
        result = executor.invoke("write", BRIEF)
        assert result.ok
        assert result.outputs == {}

    def test_output_path_inside_run_dir(self, tmp_path: Path) -> None:
        def handler(context: SkillContext) -> dict[str, str]:
            path = context.output_path("notes")
            path.write_text("hi", encoding="utf-8")
            return {"notes": str(path)}

        result = _executor(tmp_path, handler).invoke("write", BRIEF, run_dir=tmp_path / "run")
        assert result.outputs["notes"] == str(tmp_path / "run" / "deliverables" / "notes.md")

    def test_output_path_per_work_item(self, tmp_path: Path) -> None:
        def handler(context: SkillContext) -> dict[str, str]:
            return {"notes": str(context.output_path("notes"))}

        executor = _executor(tmp_path, handler)
        first = executor.invoke("write", BRIEF, run_dir=tmp_path / "run", item="api")
        second = executor.invoke("write", BRIEF, run_dir=tmp_path / "run", item="web/v2")

        assert first.outputs["notes"] == str(tmp_path / "run" / "deliverables" / "api" / "notes.md")
        assert second.outputs["notes"] == str(tmp_path / "run" / "deliverables" / "web_v2" / "notes.md")
