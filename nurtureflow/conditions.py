"""Structural predicate evaluation.

A predicate is one of:

* a leaf ``{"field": "metadata.tag", "operator": "equals", "value": "new"}``
  (``operator`` defaults to ``equals``);
* a group ``{"logic": "and" | "or", "conditions": [...]}``, or the
  shorthands ``{"all": [...]}`` and ``{"any": [...]}``;
* a list of predicates, combined with ``and``;
* ``None`` or an empty container, which always matches.

Field paths use dot notation. Lookups are supplied by the caller so the
same evaluator serves workflow conditions (metadata + contact attributes)
and scoring rules (event payload).
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Sequence

from .errors import ConditionEvaluationError


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "MISSING"


MISSING: Any = _Missing()

Lookup = Callable[[str], Any]


def _walk(value: Any, segments: Sequence[str]) -> Any:
    for segment in segments:
        if isinstance(value, Mapping):
            if segment not in value:
                return MISSING
            value = value[segment]
        elif isinstance(value, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING
    return value


def mapping_lookup(data: Mapping[str, Any]) -> Lookup:
    """Resolve dotted paths against a nested mapping."""

    def lookup(path: str) -> Any:
        return _walk(data, path.split("."))

    return lookup


def scoped_lookup(metadata: Mapping[str, Any], attributes: Mapping[str, Any]) -> Lookup:
    """Resolve paths for workflow conditions.

    ``metadata.x`` and ``contact.x`` address one scope explicitly; a bare
    path is looked up in the enrollment metadata first, then in the contact
    attributes.
    """

    scopes = {"metadata": metadata, "contact": attributes}

    def lookup(path: str) -> Any:
        head, _, rest = path.partition(".")
        if head in scopes and rest:
            return _walk(scopes[head], rest.split("."))
        value = _walk(metadata, path.split("."))
        if value is MISSING:
            value = _walk(attributes, path.split("."))
        return value

    return lookup


def _numeric_pair(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Coerce numeric strings when the other side is a number."""

    def is_number(v: Any) -> bool:
        return isinstance(v, (int, float)) and not isinstance(v, bool)

    if is_number(actual) and isinstance(expected, str):
        try:
            return actual, float(expected)
        except ValueError:
            return actual, expected
    if is_number(expected) and isinstance(actual, str):
        try:
            return float(actual), expected
        except ValueError:
            return actual, expected
    return actual, expected


def _equals(actual: Any, expected: Any) -> bool:
    a, e = _numeric_pair(actual, expected)
    return a == e


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset, Mapping)):
        try:
            return expected in actual
        except TypeError as exc:
            raise ConditionEvaluationError(
                f"Cannot check whether {actual!r} contains {expected!r}"
            ) from exc
    return False


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        a, e = _numeric_pair(actual, expected)
        try:
            return compare(a, e)
        except TypeError as exc:
            raise ConditionEvaluationError(
                f"Cannot compare {actual!r} with {expected!r}"
            ) from exc

    return op


def _as_list(expected: Any) -> list:
    if isinstance(expected, str):
        return [item.strip() for item in expected.split(",")]
    if isinstance(expected, (list, tuple, set, frozenset)):
        return list(expected)
    raise ConditionEvaluationError(f"Expected a list value, got {expected!r}")


def _in_list(actual: Any, expected: Any) -> bool:
    options = _as_list(expected)
    return any(_equals(actual, option) for option in options)


def _is_set(actual: Any, expected: Any) -> bool:
    return actual is not MISSING and actual is not None


def _is_empty(actual: Any, expected: Any) -> bool:
    return actual is MISSING or not actual


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e: not _equals(a, e),
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "starts_with": lambda a, e: isinstance(a, str) and isinstance(e, str) and a.startswith(e),
    "ends_with": lambda a, e: isinstance(a, str) and isinstance(e, str) and a.endswith(e),
    "greater_than": _ordered(lambda a, e: a > e),
    "less_than": _ordered(lambda a, e: a < e),
    "greater_or_equal": _ordered(lambda a, e: a >= e),
    "less_or_equal": _ordered(lambda a, e: a <= e),
    "is_empty": _is_empty,
    "is_not_empty": lambda a, e: not _is_empty(a, e),
    "is_set": _is_set,
    "is_not_set": lambda a, e: not _is_set(a, e),
    "in_list": _in_list,
    "not_in_list": lambda a, e: not _in_list(a, e),
    "is_true": lambda a, e: a is not MISSING and bool(a) is True,
    "is_false": lambda a, e: a is MISSING or bool(a) is False,
}

OPERATOR_ALIASES = {
    "=": "equals",
    "==": "equals",
    "!=": "not_equals",
    ">": "greater_than",
    "<": "less_than",
    ">=": "greater_or_equal",
    "<=": "less_or_equal",
}

# Operators that receive MISSING untouched; all others see None instead.
_PRESENCE_OPERATORS = {"is_set", "is_not_set", "is_empty", "is_not_empty", "is_true", "is_false"}


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a single operator."""
    name = OPERATOR_ALIASES.get(operator, operator)
    op = OPERATORS.get(name)
    if op is None:
        raise ConditionEvaluationError(f"Unknown operator: {operator!r}")
    if actual is MISSING and name not in _PRESENCE_OPERATORS:
        actual = None
    try:
        return op(actual, expected)
    except (TypeError, ValueError) as exc:
        raise ConditionEvaluationError(
            f"Operator {name!r} failed on {actual!r} and {expected!r}: {exc}"
        ) from exc


def evaluate(predicate: Any, lookup: Lookup) -> bool:
    """Evaluate ``predicate``; raises ``ConditionEvaluationError`` when malformed."""
    if predicate is None:
        return True
    if isinstance(predicate, (list, tuple)):
        return all(evaluate(p, lookup) for p in predicate)
    if not isinstance(predicate, Mapping):
        raise ConditionEvaluationError(
            f"Predicate must be a mapping or list, got {type(predicate).__name__}",
            predicate,
        )
    if not predicate:
        return True

    if "all" in predicate:
        return evaluate(list(_group_items(predicate, "all")), lookup)
    if "any" in predicate:
        return any(evaluate(p, lookup) for p in _group_items(predicate, "any"))
    if "conditions" in predicate:
        logic = str(predicate.get("logic", predicate.get("match", "and"))).lower()
        items = _group_items(predicate, "conditions")
        if logic in ("and", "all"):
            return all(evaluate(p, lookup) for p in items)
        if logic in ("or", "any"):
            return any(evaluate(p, lookup) for p in items)
        raise ConditionEvaluationError(f"Unknown logic: {logic!r}", predicate)

    field = predicate.get("field")
    if not isinstance(field, str) or not field:
        raise ConditionEvaluationError("Condition is missing a field", predicate)
    operator = predicate.get("operator", "equals")
    if not isinstance(operator, str):
        raise ConditionEvaluationError("Operator must be a string", predicate)
    return compare(lookup(field), operator, predicate.get("value"))


def _group_items(predicate: Mapping[str, Any], key: str) -> Sequence[Any]:
    items = predicate[key]
    if not isinstance(items, (list, tuple)):
        raise ConditionEvaluationError(f"'{key}' must be a list", predicate)
    return items


def safe_evaluate(predicate: Any, lookup: Lookup, default: bool = False) -> tuple[bool, Optional[str]]:
    """Evaluate and return ``(result, error)`` instead of raising."""
    try:
        return evaluate(predicate, lookup), None
    except ConditionEvaluationError as exc:
        return default, str(exc)
