"""Value normalization for drift comparison.

Remote APIs often return values that are syntactically different but
semantically equal to what was requested. Fields opt in to one or more
normalizations in their schema; both the desired and the observed value
pass through them before comparison.

COMMON FALSE POSITIVES HANDLED:
1. Empty array [] vs null vs missing
2. String "true" vs boolean true
3. Numeric string "100" vs 100
4. Case differences in enums ("Enabled" vs "enabled")
5. Trailing slashes and scheme case in URLs
6. Whitespace differences in multi-line strings
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # [], {}, "", null are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # "true", "True", True, 1 are equivalent
    BOOLEAN = "boolean"

    # "100" == 100
    NUMERIC_STRING = "numeric_string"

    CASE_INSENSITIVE = "case_insensitive"

    URL = "url"

    WHITESPACE = "whitespace"


def normalize(value: Any, kinds: Iterable[NormalizationType]) -> Any:
    """Apply normalizations to a value in declaration order.

    Args:
        value: The value to normalize.
        kinds: Normalizations declared on the field.

    Returns:
        Normalized value.
    """
    for kind in kinds:
        value = _apply(value, kind)
    return value


def _apply(value: Any, kind: NormalizationType) -> Any:
    match kind:
        case NormalizationType.EMPTY_EQUIVALENCE:
            return _normalize_empty(value)
        case NormalizationType.BOOLEAN:
            return _normalize_boolean(value)
        case NormalizationType.NUMERIC_STRING:
            return _normalize_numeric_string(value)
        case NormalizationType.CASE_INSENSITIVE:
            return _normalize_case(value)
        case NormalizationType.URL:
            return _normalize_url(value)
        case NormalizationType.WHITESPACE:
            return _normalize_whitespace(value)
        case _:
            return value


def _normalize_empty(value: Any) -> Any:
    if isinstance(value, str | list | tuple | dict | set | frozenset) and len(value) == 0:
        return None
    return value


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    return value


def _normalize_numeric_string(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            if "." in value or "e" in value.lower():
                return float(value)
            return int(value)
        except ValueError:
            return value
    return value


def _normalize_case(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, list):
        return [v.lower() if isinstance(v, str) else v for v in value]
    return value


def _normalize_url(value: Any) -> Any:
    """Lowercase the scheme and strip trailing slashes."""
    if isinstance(value, str) and "://" in value:
        scheme_end = value.index("://")
        value = value[:scheme_end].lower() + value[scheme_end:]
        value = value.rstrip("/")
    return value


def _normalize_whitespace(value: Any) -> Any:
    """Normalize line endings, collapse runs of spaces, strip the ends."""
    if isinstance(value, str):
        value = value.replace("\r\n", "\n").replace("\r", "\n")
        lines = [" ".join(line.split()) for line in value.split("\n")]
        value = "\n".join(lines).strip()
    return value
