"""Outcome of one scheduler call."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class StopReason(StrEnum):
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    GATE_CHECKS_FAILED = "gate_checks_failed"
    SKILL_FAILED = "skill_failed"
    PAUSED = "paused"
    ABORTED = "aborted"
    READY = "ready"


@dataclass
class RunReport:
    """Why the scheduler stopped and what the operator can do next."""

    reason: StopReason
    phase: str | None = None
    gate: str | None = None
    skill: str | None = None
    message: str = ""
    executed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_checks: list[str] = field(default_factory=list)
    report_ref: str | None = None

    @property
    def next_actions(self) -> list[str]:
        if self.reason == StopReason.AWAITING_APPROVAL:
            return ["approved", "changes: <feedback>", f"skip-gate {self.gate} --reason <text>"]
        if self.reason == StopReason.GATE_CHECKS_FAILED:
            return ["go", f"skip-gate {self.gate} --reason <text>"]
        if self.reason == StopReason.SKILL_FAILED:
            return ["go", f"skip {self.skill} --reason <text>", "abort --reason <text>"]
        if self.reason in (StopReason.PAUSED, StopReason.ABORTED, StopReason.READY):
            return ["go"]
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": str(self.reason),
            "phase": self.phase,
            "gate": self.gate,
            "skill": self.skill,
            "message": self.message,
            "executed": list(self.executed),
            "warnings": list(self.warnings),
            "failed_checks": list(self.failed_checks),
            "report_ref": self.report_ref,
            "next_actions": self.next_actions,
        }
