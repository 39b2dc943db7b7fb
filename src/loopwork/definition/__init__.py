"""Declarative loop definitions: models, builder, YAML loader, predicates."""

from .builder import LoopBuilder, validate_definition
from .loader import DEFAULT_DEFINITION_FILE, definition_from_mapping, load_definition
from .models import CheckDef, GateDef, LoopDefinition, PhaseDef, SkillDef
from .predicates import PredicateContext, compile_predicate

__all__ = [
    "DEFAULT_DEFINITION_FILE",
    "CheckDef",
    "GateDef",
    "LoopBuilder",
    "LoopDefinition",
    "PhaseDef",
    "PredicateContext",
    "SkillDef",
    "compile_predicate",
    "definition_from_mapping",
    "load_definition",
    "validate_definition",
]
