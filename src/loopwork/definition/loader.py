"""Load loop definitions from YAML."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from loopwork.errors import DefinitionError

from .builder import LoopBuilder
from .models import LoopDefinition
from .schema import validate_loop_document

logger = logging.getLogger(__name__)

DEFAULT_DEFINITION_FILE = "loop.yaml"


def load_definition(path: Path) -> LoopDefinition:
    """Parse, schema-validate and build the loop declared in *path*.

    Raises:
        DefinitionError: Missing file, YAML syntax error, schema violation
            or cross-reference problem.
    """
    if not path.exists():
        raise DefinitionError(f"Loop definition not found: {path}", [str(path)])

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise DefinitionError(f"Invalid YAML in {path}: {exc}", [str(exc)]) from exc

    return definition_from_mapping(data, source=str(path))


def definition_from_mapping(data: object, source: str | None = None) -> LoopDefinition:
    validate_loop_document(data)
    if not isinstance(data, dict):
        raise DefinitionError("Loop definition must be a mapping", [repr(type(data).__name__)])
    builder = LoopBuilder.from_dict(data)
    if source:
        builder.source(source)
    definition = builder.build()
    logger.debug(
        "Loaded loop '%s' with %d phase(s) from %s",
        definition.loop_id,
        len(definition.phases),
        source or "<mapping>",
    )
    return definition
