from __future__ import annotations

from typing import Any, Iterable

from .schema import ConditionOperator, TriggerCondition, parse_conditions


def payload_lookup(payload: Any, key: str | None) -> Any:
    if not key:
        return None
    current: Any = payload
    for part in key.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def _as_number(value: Any) -> float | None:
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


def loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        # Missing equals any empty value; the string "0" is not empty.
        return not (expected if actual is None else actual)
    if isinstance(actual, bool) or isinstance(expected, bool):
        return bool(actual) == bool(expected)
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    return False


def _compare(actual: Any, expected: Any, greater: bool) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right


def evaluate_condition(payload: Any, condition: TriggerCondition) -> bool:
    value = payload_lookup(payload, condition.field)
    expected = condition.value
    match condition.operator:
        case ConditionOperator.EQUALS:
            return loose_equals(value, expected)
        case ConditionOperator.NOT_EQUALS:
            return not loose_equals(value, expected)
        case ConditionOperator.CONTAINS:
            return isinstance(value, str) and str(expected if expected is not None else "") in value
        case ConditionOperator.NOT_CONTAINS:
            return isinstance(value, str) and str(expected if expected is not None else "") not in value
        case ConditionOperator.GREATER_THAN:
            return _compare(value, expected, greater=True)
        case ConditionOperator.LESS_THAN:
            return _compare(value, expected, greater=False)
        case ConditionOperator.EXISTS:
            return value is not None
        case ConditionOperator.NOT_EXISTS:
            return value is None
        case ConditionOperator.IN:
            return isinstance(expected, list) and any(loose_equals(value, item) for item in expected)
        case ConditionOperator.NOT_IN:
            return isinstance(expected, list) and not any(loose_equals(value, item) for item in expected)
    # Unknown operators never block the pipeline.
    return True


def matches(payload: Any, conditions: Iterable[TriggerCondition] | dict[str, Any] | None) -> bool:
    if not conditions:
        return True
    rows = parse_conditions(conditions) if isinstance(conditions, dict) else list(conditions)
    return all(evaluate_condition(payload, condition) for condition in rows)
