"""Skill invocation boundary.

A skill is addressed by id. Its handler is a callable, or a
``module:function`` reference resolved with :mod:`importlib`, that receives
a :class:`SkillContext` and returns a mapping of output deliverable name to
reference (usually a path), or ``None`` when it declares no outputs.
Numbers a skill puts in ``context.metrics`` are merged into the run's
metrics map.

The executor is pure with respect to the execution record: it never mutates
state, so parallel skills can run on worker threads and the scheduler
applies results on its own thread.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from loopwork.definition.models import Handler, LoopDefinition
from loopwork.errors import DefinitionError, SkillFailure
from loopwork.record.models import Deliverable

logger = logging.getLogger(__name__)


def resolve_handler(reference: Handler) -> Callable[..., Any]:
    """Return the callable for a handler or ``module:function`` reference.

    Raises:
        DefinitionError: If the module or attribute cannot be imported.
    """
    if callable(reference):
        return reference
    module_name, _, attr_path = str(reference).partition(":")
    if not module_name or not attr_path:
        raise DefinitionError(f"Handler '{reference}' must look like 'module:function'", [str(reference)])
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise DefinitionError(f"Cannot import handler module '{module_name}': {exc}", [str(reference)]) from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise DefinitionError(f"Handler '{reference}' not found", [str(reference)]) from exc
    if not callable(target):
        raise DefinitionError(f"Handler '{reference}' is not callable", [str(reference)])
    return target


@dataclass(frozen=True)
class SkillContext:
    """Everything a skill may know about its invocation."""

    skill_id: str
    phase: str
    run_id: str
    inputs: Mapping[str, Deliverable]
    outputs: tuple[str, ...]
    work_dir: Path
    run_dir: Path | None = None
    item: str | None = None
    feedback: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def output_path(self, name: str, suffix: str = ".md") -> Path:
        """Conventional location for an output file inside the run directory.

        Iterated runs get one subdirectory per work item so each item keeps
        its own files.
        """
        base = self.run_dir if self.run_dir is not None else self.work_dir
        folder = base / "deliverables"
        if self.item is not None:
            folder = folder / item_segment(self.item)
        target = folder / f"{name}{suffix}"
        target.parent.mkdir(parents=True, exist_ok=True)
        return target


@dataclass
class SkillResult:
    skill_id: str
    ok: bool
    outputs: dict[str, str | None] = field(default_factory=dict)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    def raise_for_failure(self) -> None:
        if not self.ok:
            raise SkillFailure(self.skill_id, self.error or "unknown error")


class SkillExecutor:
    """Invoke skills declared in a loop definition.

    Args:
        definition: The loop whose skills may be invoked.
        work_dir: Working directory passed to skills.
        handlers: Optional id -> callable overrides (take precedence over
            the handler declared in the definition).
    """

    def __init__(
        self,
        definition: LoopDefinition,
        work_dir: Path,
        *,
        handlers: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.definition = definition
        self.work_dir = Path(work_dir)
        self._overrides = dict(handlers or {})

    def invoke(
        self,
        skill_id: str,
        inputs: Mapping[str, Deliverable],
        *,
        run_id: str = "",
        run_dir: Path | None = None,
        item: str | None = None,
        feedback: str | None = None,
    ) -> SkillResult:
        """Run one skill and normalize its outcome; never raises for skill errors."""
        phase, skill = self.definition.skill(skill_id)

        try:
            handler = self._overrides.get(skill_id) or (
                resolve_handler(skill.handler) if skill.handler is not None else None
            )
        except DefinitionError as exc:
            return SkillResult(skill_id, ok=False, error=str(exc))
        if handler is None:
            return SkillResult(skill_id, ok=False, error=f"No handler registered for skill '{skill_id}'")

        context = SkillContext(
            skill_id=skill_id,
            phase=phase.name,
            run_id=run_id,
            inputs=dict(inputs),
            outputs=skill.outputs,
            work_dir=self.work_dir,
            run_dir=run_dir,
            item=item,
            feedback=feedback,
        )

        logger.info("Invoking skill %s (phase %s)", skill_id, phase.name)
        try:
            returned = handler(context)
        except Exception as exc:  # any error is a skill failure
            logger.warning("Skill %s failed: %s", skill_id, exc, exc_info=True)
            detail = exc.error if isinstance(exc, SkillFailure) else f"{type(exc).__name__}: {exc}"
            return SkillResult(skill_id, ok=False, error=detail)

        result = self._normalize(skill_id, skill.outputs, returned)
        result.metrics = dict(context.metrics)
        return result

    def _normalize(self, skill_id: str, declared: tuple[str, ...], returned: Any) -> SkillResult:
        if returned is None:
            returned = {}
        if not isinstance(returned, Mapping):
            return SkillResult(
                skill_id,
                ok=False,
                error=f"Skill returned {type(returned).__name__}; expected a mapping of outputs",
            )

        warnings: list[str] = []
        outputs: dict[str, str | None] = {}
        for name, ref in returned.items():
            if name not in declared:
                warnings.append(f"Skill '{skill_id}' returned undeclared output '{name}' (ignored)")
                continue
            outputs[str(name)] = None if ref is None else str(ref)
        for name in declared:
            if name not in outputs:
                warnings.append(f"Skill '{skill_id}' did not return declared output '{name}'")
        for message in warnings:
            logger.warning(message)
        return SkillResult(skill_id, ok=True, outputs=outputs, warnings=warnings)


def item_segment(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in value).strip(".")
    return cleaned or "_"
