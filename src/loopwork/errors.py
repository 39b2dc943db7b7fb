"""Exception hierarchy for the loop execution engine.

Only conditions that stop an operation are exceptions. Gate rejections,
auto-check failures and skill failures are ordinary outcomes carried by
the scheduler's run reports; the classes here are raised when a caller
cannot proceed without an operator decision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from loopwork.record.models import ExecutionRecord


class LoopworkError(Exception):
    """Base exception for loopwork errors."""


class DefinitionError(LoopworkError):
    """Raised when a loop definition is structurally invalid.

    Attributes:
        errors: Every validation problem found, with field paths.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = errors or []


class StateCorruption(LoopworkError):
    """The persisted execution record failed validation on load.

    The corrupt file is left in place; callers may quarantine it and
    start fresh, but never resume from it.
    """

    def __init__(self, path: "Path | None", reason: str, errors: list[str] | None = None) -> None:
        self.path = path
        self.reason = reason
        self.errors: list[str] = errors or []
        location = str(path) if path is not None else "<memory>"
        super().__init__(f"Execution record {location} is corrupt: {reason}")


class ConcurrentInvocation(LoopworkError):
    """An active execution record already exists for this working context."""

    def __init__(self, record: "ExecutionRecord | None", message: str | None = None) -> None:
        self.record = record
        if message:
            super().__init__(message)
        elif record is not None:
            super().__init__(
                f"Run {record.run_id} of loop '{record.loop_id}' is already active "
                f"(phase '{record.current_phase}'). Resume it or restart explicitly."
            )
        else:
            super().__init__("Another invocation is driving this working context.")


class TransitionError(LoopworkError):
    """A directive is not legal in the run's current state."""


class ReworkError(LoopworkError):
    """A rework request named an unknown or illegal target."""


class CommandError(LoopworkError):
    """Operator input did not match the directive vocabulary."""

    def __init__(self, message: str, usage: str | None = None) -> None:
        super().__init__(message)
        self.usage = usage


class SkillFailure(LoopworkError):
    """A skill raised or reported failure."""

    def __init__(self, skill_id: str, error: str) -> None:
        self.skill_id = skill_id
        self.error = error
        super().__init__(f"Skill '{skill_id}' failed: {error}")


class RemoteSyncError(LoopworkError):
    """A call to the remote coordination endpoint failed.

    Attributes:
        status_code: HTTP status when the server answered, else ``None``.
        transient: Whether retrying the same call may succeed.
    """

    def __init__(self, message: str, status_code: int | None = None, transient: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
