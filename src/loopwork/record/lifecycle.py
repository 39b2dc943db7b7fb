"""Transition tables for run, phase, skill and gate statuses.

Every status change in the engine goes through :func:`apply_transition`,
which consults the matrices below. Resets used by rework, iteration and
crash recovery are ordinary table entries, not special cases.
"""

from __future__ import annotations

from enum import StrEnum

from loopwork.errors import TransitionError

from .models import GateStatus, PhaseStatus, RunStatus, SkillStatus

RUN_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("active", "paused"),
        ("paused", "active"),
        ("active", "completed"),
    }
)

PHASE_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "in_progress"),
        ("in_progress", "completed"),
        # rework, jump and iteration resets
        ("completed", "in_progress"),
        ("completed", "pending"),
        ("in_progress", "pending"),
    }
)

SKILL_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "in_progress"),
        ("pending", "skipped"),
        ("in_progress", "completed"),
        ("in_progress", "failed"),
        ("in_progress", "skipped"),
        ("failed", "in_progress"),
        ("failed", "skipped"),
        # resets
        ("in_progress", "pending"),
        ("completed", "pending"),
        ("skipped", "pending"),
        ("failed", "pending"),
    }
)

GATE_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "passed"),
        ("pending", "rejected"),
        ("pending", "skipped"),
        ("rejected", "pending"),
        ("rejected", "skipped"),
        # resets
        ("passed", "pending"),
        ("skipped", "pending"),
    }
)

_TABLES: dict[type[StrEnum], frozenset[tuple[str, str]]] = {
    RunStatus: RUN_TRANSITIONS,
    PhaseStatus: PHASE_TRANSITIONS,
    SkillStatus: SKILL_TRANSITIONS,
    GateStatus: GATE_TRANSITIONS,
}


def validate_transition(current: StrEnum, target: StrEnum) -> tuple[bool, str | None]:
    """Check a status change against its table.

    Returns ``(True, None)`` for a legal change (including a no-op) and
    ``(False, message)`` otherwise.
    """
    if type(current) is not type(target):
        return False, f"Cannot compare {type(current).__name__} with {type(target).__name__}"
    if current == target:
        return True, None
    table = _TABLES[type(current)]
    if (str(current), str(target)) not in table:
        return False, f"Illegal {type(current).__name__} transition: {current} -> {target}"
    return True, None


def apply_transition(obj: object, target: StrEnum, subject: str = "") -> None:
    """Set ``obj.status`` to *target* or raise :class:`TransitionError`."""
    current = getattr(obj, "status")
    ok, error = validate_transition(current, target)
    if not ok:
        prefix = f"{subject}: " if subject else ""
        raise TransitionError(f"{prefix}{error}")
    setattr(obj, "status", target)
