"""JSON Schema for the persisted execution record."""

from __future__ import annotations

from typing import Any

import jsonschema

from .models import SCHEMA_VERSION

_NULLABLE_STRING: dict[str, Any] = {"type": ["string", "null"]}

_SKILL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["skill_id", "status"],
    "properties": {
        "skill_id": {"type": "string", "minLength": 1},
        "status": {"enum": ["pending", "in_progress", "completed", "skipped", "failed"]},
        "reason": _NULLABLE_STRING,
        "outputs": {"type": "array", "items": {"type": "string"}},
        "attempts": {"type": "integer", "minimum": 0},
        "error": _NULLABLE_STRING,
        "feedback": _NULLABLE_STRING,
        "started_at": _NULLABLE_STRING,
        "completed_at": _NULLABLE_STRING,
    },
}

_PHASE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "status", "skills"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "status": {"enum": ["pending", "in_progress", "completed"]},
        "skills": {"type": "array", "items": _SKILL_SCHEMA},
        "deliverables": {"type": "array", "items": {"type": "string"}},
        "started_at": _NULLABLE_STRING,
        "completed_at": _NULLABLE_STRING,
    },
}

_APPROVAL_TYPES = ["human", "auto", "conditional"]

_GATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["gate_id", "phase", "approval_type", "status"],
    "properties": {
        "gate_id": {"type": "string", "minLength": 1},
        "phase": {"type": "string"},
        "approval_type": {"enum": _APPROVAL_TYPES},
        "type_override": {"enum": _APPROVAL_TYPES + [None]},
        "required": {"type": "boolean"},
        "enabled": {"type": "boolean"},
        "status": {"enum": ["pending", "passed", "rejected", "skipped"]},
        "skip_reason": _NULLABLE_STRING,
        "attempts": {"type": "integer", "minimum": 0},
        "condition_triggered": {"type": ["boolean", "null"]},
        "last_failures": {"type": "array", "items": {"type": "string"}},
        "feedback": {"type": "array", "items": {"type": "object"}},
    },
}

_DELIVERABLE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "producer"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "producer": {"type": "string"},
        "phase": _NULLABLE_STRING,
        "ref": _NULLABLE_STRING,
        "durable": {"type": "boolean"},
        "version": {"type": "integer", "minimum": 1},
    },
}

RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "loopwork execution record",
    "type": "object",
    "required": ["schema_version", "loop_id", "run_id", "status", "phases", "gates"],
    "properties": {
        "schema_version": {"type": "integer", "minimum": 1, "maximum": SCHEMA_VERSION},
        "loop_id": {"type": "string", "minLength": 1},
        "run_id": {"type": "string", "minLength": 1},
        "current_phase": _NULLABLE_STRING,
        "status": {"enum": ["active", "paused", "completed"]},
        "phases": {"type": "array", "items": _PHASE_SCHEMA},
        "gates": {"type": "object", "additionalProperties": _GATE_SCHEMA},
        "deliverables": {"type": "object", "additionalProperties": _DELIVERABLE_SCHEMA},
        "superseded": {"type": "array", "items": _DELIVERABLE_SCHEMA},
        "metrics": {"type": "object"},
        "iteration": {
            "type": ["object", "null"],
            "properties": {
                "current": _NULLABLE_STRING,
                "completed": {"type": "array", "items": {"type": "string"}},
                "remaining": {"type": "array", "items": {"type": "string"}},
            },
        },
        "remote_execution_id": _NULLABLE_STRING,
        "remote_degraded": {"type": "boolean"},
        "pre_run_context": {"type": ["object", "null"]},
        "log": {
            "type": "array",
            "items": {"type": "object", "required": ["at", "event"]},
        },
    },
}


def record_schema_errors(payload: Any) -> list[str]:
    """Return human-readable schema violations for *payload* (empty when valid)."""
    validator = jsonschema.Draft202012Validator(RECORD_SCHEMA)
    errors: list[str] = []
    for error in sorted(validator.iter_errors(payload), key=lambda e: list(e.absolute_path)):
        path = ".".join(str(p) for p in error.absolute_path) or "<root>"
        errors.append(f"{path}: {error.message}")
    return errors
