"""Field lookup, condition evaluation and ``${path}`` templating."""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping, Optional

from .contracts import Condition
from .exceptions import ConditionError

TEMPLATE_PATTERN = re.compile(r"\$\{([^}]*)\}")

SUPPORTED_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "contains",
        "not_contains",
        "starts_with",
        "ends_with",
        "regex",
        "greater_than",
        "less_than",
        "greater_or_equal",
        "less_or_equal",
        "in",
        "not_in",
    }
)


def get_field_value(data: Any, path: str) -> Any:
    """Resolve a dot separated ``path`` inside nested dicts and lists.

    Returns ``None`` when any segment is missing.
    """
    if not path:
        return None
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def to_text(value: Any) -> str:
    """String form used for comparisons and template output."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
    return None


def _members(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [to_text(v) for v in value]
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    return [to_text(value)]


def _equals(field_value: Any, expected: Any, hint: Optional[str]) -> bool:
    if hint == "number":
        left, right = to_number(field_value), to_number(expected)
        return left is not None and right is not None and left == right
    if hint == "boolean":
        left, right = to_bool(field_value), to_bool(expected)
        return left is not None and left == right
    return to_text(field_value) == to_text(expected)


def _compare(field_value: Any, expected: Any, operator: str) -> bool:
    left, right = to_number(field_value), to_number(expected)
    if left is None or right is None:
        return False
    if operator == "greater_than":
        return left > right
    if operator == "less_than":
        return left < right
    if operator == "greater_or_equal":
        return left >= right
    return left <= right


def evaluate_condition(condition: Condition, data: Mapping[str, Any]) -> bool:
    """Evaluate one condition against ``data``.

    Raises ``ConditionError`` for an unsupported operator or invalid regex.
    """
    operator = condition.operator
    if operator not in SUPPORTED_OPERATORS:
        raise ConditionError(f"Unsupported operator {operator!r} on field {condition.field!r}")

    field_value = get_field_value(data, condition.field)
    expected = condition.value

    if operator == "equals":
        return _equals(field_value, expected, condition.type)
    if operator == "not_equals":
        return not _equals(field_value, expected, condition.type)

    if operator in ("greater_than", "less_than", "greater_or_equal", "less_or_equal"):
        return _compare(field_value, expected, operator)

    if operator == "in":
        return to_text(field_value) in _members(expected)
    if operator == "not_in":
        return to_text(field_value) not in _members(expected)

    text, needle = to_text(field_value), to_text(expected)
    if operator == "contains":
        return bool(text and needle) and needle in text
    if operator == "not_contains":
        return not (text and needle) or needle not in text
    if operator == "starts_with":
        return bool(text and needle) and text.startswith(needle)
    if operator == "ends_with":
        return bool(text and needle) and text.endswith(needle)

    # regex
    if not needle:
        return False
    try:
        return re.search(needle, text) is not None
    except re.error as e:
        raise ConditionError(f"Invalid regex {needle!r}: {e}") from e


def evaluate_conditions(
    conditions: Iterable[Condition], data: Mapping[str, Any], logic: str = "AND"
) -> bool:
    """Combine conditions with AND/OR. An empty list is true."""
    conditions = list(conditions)
    if not conditions:
        return True
    if logic.upper() == "OR":
        return any(evaluate_condition(c, data) for c in conditions)
    return all(evaluate_condition(c, data) for c in conditions)


def render_template(text: str, data: Mapping[str, Any]) -> Any:
    """Substitute ``${path}`` placeholders in ``text``.

    A string consisting of exactly one placeholder keeps the referenced
    value's type; otherwise values are inserted in their string form and
    missing paths render empty.
    """
    whole = TEMPLATE_PATTERN.fullmatch(text)
    if whole:
        value = get_field_value(data, whole.group(1).strip())
        return value if value is not None else ""
    return TEMPLATE_PATTERN.sub(
        lambda m: to_text(get_field_value(data, m.group(1).strip())), text
    )


def resolve_templates(value: Any, data: Mapping[str, Any]) -> Any:
    """Recursively render every string inside ``value``."""
    if isinstance(value, str):
        return render_template(value, data)
    if isinstance(value, dict):
        return {k: resolve_templates(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_templates(v, data) for v in value]
    return value
