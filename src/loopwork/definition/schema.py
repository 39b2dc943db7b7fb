"""JSON Schema for loop definition YAML files.

Provides:
- LOOP_SCHEMA: JSON Schema dict for a ``loop.yaml`` document
- validate_loop_document(data): Raise DefinitionError with every violation
"""

from __future__ import annotations

from typing import Any

import jsonschema

from loopwork.errors import DefinitionError

_IDENTIFIER: dict[str, Any] = {"type": "string", "pattern": r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"}
_NAME_LIST: dict[str, Any] = {"type": "array", "items": {"type": "string", "minLength": 1}, "uniqueItems": True}
_HANDLER: dict[str, Any] = {"type": "string", "pattern": r"^[\w.]+:[\w.]+$"}

_SKILL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": _IDENTIFIER,
        "handler": _HANDLER,
        "inputs": _NAME_LIST,
        "outputs": _NAME_LIST,
        "durable": {"type": "boolean"},
        "once": {"type": "boolean"},
        "description": {"type": "string"},
    },
    "additionalProperties": False,
}

_CHECK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "handler": _HANDLER,
        "command": {"type": "string", "minLength": 1},
        "timeout": {"type": "number", "exclusiveMinimum": 0},
    },
    "additionalProperties": False,
}

_GATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "type"],
    "properties": {
        "id": _IDENTIFIER,
        "type": {"enum": ["human", "auto", "conditional"]},
        "required": {"type": "boolean"},
        "enabled": {"type": "boolean"},
        "checks": {"type": "array", "items": _CHECK_SCHEMA},
        "condition": {"type": "string", "minLength": 1},
        "inputs": _NAME_LIST,
        "once": {"type": "boolean"},
        "description": {"type": "string"},
    },
    "additionalProperties": False,
}

_PHASE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": _IDENTIFIER,
        "skills": {"type": "array", "items": _SKILL_SCHEMA},
        "gate": _GATE_SCHEMA,
        "parallel": {"type": "boolean"},
        "once": {"type": "boolean"},
        "description": {"type": "string"},
    },
    "additionalProperties": False,
}

LOOP_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "loopwork loop definition",
    "type": "object",
    "required": ["loop", "phases"],
    "properties": {
        "loop": _IDENTIFIER,
        "description": {"type": "string"},
        "seeds": _NAME_LIST,
        "items": {"type": "array", "items": {"type": ["string", "integer"]}},
        "phases": {"type": "array", "items": _PHASE_SCHEMA, "minItems": 1},
    },
    "additionalProperties": False,
}


def validate_loop_document(data: Any) -> None:
    """Validate a parsed definition document against :data:`LOOP_SCHEMA`.

    Raises:
        DefinitionError: With one entry per violation in ``errors``.
    """
    validator = jsonschema.Draft202012Validator(LOOP_SCHEMA)
    errors: list[str] = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        path = ".".join(str(p) for p in error.absolute_path) or "<root>"
        errors.append(f"{path}: {error.message}")
    if errors:
        raise DefinitionError(f"Loop definition failed validation with {len(errors)} error(s)", errors)
