"""Predicate compiler for conditional gates.

Provides:
- parse_predicate_expression(expr): Parse ``"func_name(args)"`` into (name, args_list)
- PREDICATE_REGISTRY: Maps predicate names to factory callables
- compile_predicate(expr): Bind an expression string to a callable
- primitives: deliverable_exists, skill_skipped, skill_failed_before,
  metric_at_least, env_set, item_matches, always, never

An expression may be prefixed with ``not:`` to negate it. Compiled
predicates receive a :class:`PredicateContext` and return bool; they never
raise for missing state, they return False instead.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from loopwork.errors import DefinitionError
from loopwork.record.models import ExecutionRecord, SkillStatus

Predicate = Callable[["PredicateContext"], bool]

_EXPR_RE = re.compile(r"^(\w+)\((.*)\)$", re.DOTALL)
_NEGATION_PREFIX = "not:"


@dataclass(frozen=True)
class PredicateContext:
    record: ExecutionRecord
    env: Mapping[str, str] = field(default_factory=dict)


def parse_predicate_expression(expr: str) -> tuple[str, list[Any]]:
    """Parse ``name(arg, ...)`` into its name and literal arguments.

    Integers and floats are converted; quoted strings are unquoted; bare
    words stay strings.

    Raises:
        ValueError: If *expr* does not match the ``name(args)`` pattern.
    """
    match = _EXPR_RE.match(expr.strip())
    if not match:
        raise ValueError(f"Invalid predicate syntax: '{expr}'. Expected format: name(arg1, arg2, ...)")

    name = match.group(1)
    raw_args = match.group(2).strip()
    if not raw_args:
        return name, []

    args: list[Any] = []
    for token in _split_args(raw_args):
        token = token.strip()
        args.append(_literal(token))
    return name, args


def _literal(token: str) -> Any:
    for cast in (int, float):
        try:
            return cast(token)
        except ValueError:
            pass
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
        return token[1:-1]
    return token


def _split_args(raw: str) -> list[str]:
    """Split comma-separated args, respecting quoted strings."""
    parts: list[str] = []
    current: list[str] = []
    in_quote: str | None = None

    for ch in raw:
        if in_quote:
            current.append(ch)
            if ch == in_quote:
                in_quote = None
        elif ch in ('"', "'"):
            in_quote = ch
            current.append(ch)
        elif ch == ",":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)

    if current:
        parts.append("".join(current))
    return parts


# ---------------------------------------------------------------------------
# Primitive factories
# ---------------------------------------------------------------------------


def _deliverable_exists(args: list[Any]) -> Predicate:
    name = str(args[0])
    return lambda ctx: name in ctx.record.deliverables


def _skill_skipped(args: list[Any]) -> Predicate:
    skill_id = str(args[0])

    def predicate(ctx: PredicateContext) -> bool:
        try:
            _, state = ctx.record.locate_skill(skill_id)
        except KeyError:
            return False
        return state.status == SkillStatus.SKIPPED

    return predicate


def _skill_failed_before(args: list[Any]) -> Predicate:
    """True when the skill needed more than one attempt."""
    skill_id = str(args[0])

    def predicate(ctx: PredicateContext) -> bool:
        try:
            _, state = ctx.record.locate_skill(skill_id)
        except KeyError:
            return False
        return state.attempts > 1 or state.status == SkillStatus.FAILED

    return predicate


def _metric_at_least(args: list[Any]) -> Predicate:
    metric = str(args[0])
    threshold = float(args[1])

    def predicate(ctx: PredicateContext) -> bool:
        value = ctx.record.metrics.get(metric)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= threshold

    return predicate


def _env_set(args: list[Any]) -> Predicate:
    variable = str(args[0])
    return lambda ctx: bool(ctx.env.get(variable, "").strip())


def _item_matches(args: list[Any]) -> Predicate:
    pattern = str(args[0])

    def predicate(ctx: PredicateContext) -> bool:
        item = ctx.record.current_item
        return item is not None and fnmatch.fnmatchcase(item, pattern)

    return predicate


def _always(args: list[Any]) -> Predicate:
    return lambda ctx: True


def _never(args: list[Any]) -> Predicate:
    return lambda ctx: False


# name -> (factory, arity)
PREDICATE_REGISTRY: dict[str, tuple[Callable[[list[Any]], Predicate], int]] = {
    "deliverable_exists": (_deliverable_exists, 1),
    "skill_skipped": (_skill_skipped, 1),
    "skill_failed_before": (_skill_failed_before, 1),
    "metric_at_least": (_metric_at_least, 2),
    "env_set": (_env_set, 1),
    "item_matches": (_item_matches, 1),
    "always": (_always, 0),
    "never": (_never, 0),
}


def compile_predicate(expr: str) -> Predicate:
    """Compile *expr* into a predicate.

    Raises:
        DefinitionError: Unknown predicate, wrong arity or bad syntax.
    """
    text = expr.strip()
    negate = text.startswith(_NEGATION_PREFIX)
    if negate:
        text = text[len(_NEGATION_PREFIX):].strip()

    try:
        name, args = parse_predicate_expression(text)
    except ValueError as exc:
        raise DefinitionError(str(exc), [str(exc)]) from exc

    entry = PREDICATE_REGISTRY.get(name)
    if entry is None:
        message = f"Unknown predicate '{name}'. Available: {', '.join(sorted(PREDICATE_REGISTRY))}"
        raise DefinitionError(message, [message])

    factory, arity = entry
    if len(args) != arity:
        message = f"Predicate '{name}' takes {arity} argument(s), got {len(args)}"
        raise DefinitionError(message, [message])

    try:
        predicate = factory(args)
    except (TypeError, ValueError) as exc:
        message = f"Invalid arguments for '{name}': {exc}"
        raise DefinitionError(message, [message]) from exc

    if negate:
        return lambda ctx: not predicate(ctx)
    return predicate
