"""
Selector evaluation for the VoteStore document store.

A selector is a declarative predicate over document fields:

    {"type": "student", "course": "1ro Bach A"}          field equality
    {"cedula": {"$ne": "0987654321"}}                    not equal / missing
    {"numero": {"$exists": True}}                        field presence
    {"apellidos": {"$regex": "garc"}}                    case-insensitive search
    {"$or": [{"_id": "x"}, {"cedula": "x"}]}             disjunction

Keys at the same level are implicitly AND-ed. Dotted keys address nested
maps ("contact.email"). Equality is kind-strict: booleans never equal
numbers, and 1 equals 1.0.

Invariants:
    - Evaluation never depends on indexes; a full scan with matches()
      is always a correct answer
    - A malformed selector matches nothing (compile_selector logs the
      MalformedSelector and returns a predicate that is always False)

How to change safely:
    - New operators must be added to SUPPORTED_OPERATORS, validated in
      validate_selector() and evaluated in _match_operators()
    - Keep equality_fields() limited to plain scalar equality so index
      planning stays exact
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from ..errors import MalformedSelector

logger = logging.getLogger(__name__)

SUPPORTED_OPERATORS = frozenset({"$ne", "$exists", "$regex"})

Selector = Mapping[str, Any]
Predicate = Callable[[Mapping[str, Any]], bool]


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


def get_field(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a (possibly dotted) field path.

    Returns:
        The value, or MISSING if any path segment is absent
    """
    if path in doc:
        return doc[path]
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


def is_scalar(value: Any) -> bool:
    """Whether a value can be an index key (non-null str/number/bool)."""
    return isinstance(value, (str, int, float, bool))


def normalize_scalar(value: Any) -> Any:
    """Canonical form of a scalar for index keys (2.0 -> 2)."""
    if isinstance(value, float) and not isinstance(value, bool) and value.is_integer():
        return int(value)
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Kind-strict equality used by selector matching."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left) != set(right):
            return False
        return all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, Mapping) and any(str(k).startswith("$") for k in value)


def validate_selector(selector: Any) -> None:
    """Check a selector against the supported mini-language.

    Raises:
        MalformedSelector: If an operator or shape is not supported
    """
    if selector is None:
        return
    if not isinstance(selector, Mapping):
        raise MalformedSelector(f"Selector must be a mapping, got {type(selector).__name__}")

    for key, value in selector.items():
        if not isinstance(key, str):
            raise MalformedSelector(f"Selector keys must be strings, got {key!r}")
        if key == "$or":
            if not isinstance(value, list) or not value:
                raise MalformedSelector("$or expects a non-empty list of selectors", "$or")
            for sub in value:
                if not isinstance(sub, Mapping):
                    raise MalformedSelector("$or entries must be selectors", "$or")
                validate_selector(sub)
            continue
        if key.startswith("$"):
            raise MalformedSelector(f"Unsupported top-level operator: {key}", key)
        if _is_operator_dict(value):
            for op, operand in value.items():
                if op not in SUPPORTED_OPERATORS:
                    raise MalformedSelector(f"Unsupported operator {op} on field {key}", op)
                if op == "$exists" and not isinstance(operand, bool):
                    raise MalformedSelector("$exists expects a boolean", op)
                if op == "$regex":
                    if not isinstance(operand, str):
                        raise MalformedSelector("$regex expects a string pattern", op)
                    try:
                        re.compile(operand, re.IGNORECASE)
                    except re.error as e:
                        raise MalformedSelector(f"Invalid $regex pattern {operand!r}: {e}", op)


def _regex_subject(value: Any) -> str | None:
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(normalize_scalar(value))
    if isinstance(value, str):
        return value
    return None


def _match_operators(value: Any, ops: Mapping[str, Any]) -> bool:
    for op, operand in ops.items():
        if op == "$ne":
            if value is not MISSING and values_equal(value, operand):
                return False
        elif op == "$exists":
            if (value is not MISSING) != operand:
                return False
        elif op == "$regex":
            subject = _regex_subject(value)
            if subject is None or not re.search(operand, subject, re.IGNORECASE):
                return False
    return True


def matches(doc: Mapping[str, Any], selector: Selector | None) -> bool:
    """Evaluate a validated selector against a flat document envelope."""
    if not selector:
        return True
    for key, expected in selector.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in expected):
                return False
            continue
        value = get_field(doc, key)
        if _is_operator_dict(expected):
            if not _match_operators(value, expected):
                return False
        elif value is MISSING or not values_equal(value, expected):
            return False
    return True


def compile_selector(selector: Selector | None) -> Predicate:
    """Build a predicate for a selector.

    A malformed selector yields a predicate that matches nothing.
    """
    try:
        validate_selector(selector)
    except MalformedSelector as e:
        logger.warning(
            f"Malformed selector treated as empty result: {e.message}",
            extra={"operator": e.operator},
        )
        return lambda doc: False
    return lambda doc: matches(doc, selector)


def equality_fields(selector: Selector | None) -> dict[str, Any]:
    """Top-level plain equality fields with scalar values.

    These are the only fields index planning may use.
    """
    if not selector:
        return {}
    return {
        key: normalize_scalar(value)
        for key, value in selector.items()
        if not key.startswith("$") and is_scalar(value)
    }


def is_pure_equality(selector: Selector | None) -> bool:
    """Whether every clause is a plain scalar equality (no operators, no $or)."""
    if not selector:
        return True
    return len(equality_fields(selector)) == len(selector)
