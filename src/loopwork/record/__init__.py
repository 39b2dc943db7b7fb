"""Execution record: models, transition tables, persistence and sessions."""

from .models import (
    SCHEMA_VERSION,
    ApprovalType,
    Deliverable,
    ExecutionRecord,
    GateState,
    GateStatus,
    IterationContext,
    LogEntry,
    PhaseState,
    PhaseStatus,
    RunStatus,
    SkillState,
    SkillStatus,
)
from .session import RunSession
from .store import FileRecordStore, MemoryRecordStore, RecordStore

__all__ = [
    "SCHEMA_VERSION",
    "ApprovalType",
    "Deliverable",
    "ExecutionRecord",
    "FileRecordStore",
    "GateState",
    "GateStatus",
    "IterationContext",
    "LogEntry",
    "MemoryRecordStore",
    "PhaseState",
    "PhaseStatus",
    "RecordStore",
    "RunSession",
    "RunStatus",
    "SkillState",
    "SkillStatus",
]
