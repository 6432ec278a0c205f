"""Deep merge over JSON-like value trees.

Values are classified into three kinds (object, array, scalar). Only two
objects merge recursively; any other combination is an overwrite by the
incoming value.
"""

from enum import Enum
from typing import Any

DANGEROUS_KEYS = frozenset({"__proto__", "constructor", "prototype"})


class ValueKind(str, Enum):
    """Kind of a JSON value for merge purposes."""

    OBJECT = "object"
    ARRAY = "array"
    SCALAR = "scalar"


def kind_of(value: Any) -> ValueKind:
    """Classify a decoded JSON value."""
    if isinstance(value, dict):
        return ValueKind.OBJECT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.SCALAR


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Nested objects are merged key by key; arrays and scalars from ``override``
    replace whatever ``base`` held. Dangerous keys are dropped from both sides.
    Neither input is mutated.

    Args:
        base: Lower-priority document
        override: Higher-priority document

    Returns:
        New merged dictionary
    """
    result = {k: _copy(v) for k, v in base.items() if k not in DANGEROUS_KEYS}

    for key, value in override.items():
        if key in DANGEROUS_KEYS:
            continue
        existing = result.get(key)
        if kind_of(existing) is ValueKind.OBJECT and kind_of(value) is ValueKind.OBJECT:
            result[key] = deep_merge(existing, value)
        else:
            result[key] = _copy(value)

    return result


def strip_dangerous_keys(value: Any) -> Any:
    """Return a copy of ``value`` with dangerous keys removed at every depth."""
    kind = kind_of(value)
    if kind is ValueKind.OBJECT:
        return {
            k: strip_dangerous_keys(v) for k, v in value.items() if k not in DANGEROUS_KEYS
        }
    if kind is ValueKind.ARRAY:
        return [strip_dangerous_keys(v) for v in value]
    return value


def _copy(value: Any) -> Any:
    kind = kind_of(value)
    if kind is ValueKind.OBJECT:
        return {k: _copy(v) for k, v in value.items() if k not in DANGEROUS_KEYS}
    if kind is ValueKind.ARRAY:
        return [_copy(v) for v in value]
    return value
