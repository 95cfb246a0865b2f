"""
Condition operators evaluated by condition nodes.

`evaluate_condition` always returns a bool: a value that cannot be compared
(missing field, non-numeric value for an ordering operator) makes the
comparison False instead of raising.
"""

from typing import Any, Callable, Dict, Optional


def get_field_value(data: Dict[str, Any], path: str) -> Any:
    """
    Resolve a field on a lead snapshot.

    A key that exists verbatim wins; otherwise the path is followed through
    nested mappings ("custom_fields.industry"). Missing segments give None.
    """
    if path in data:
        return data[path]

    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _fold(value: Any, case_sensitive: bool) -> Any:
    if isinstance(value, str) and not case_sensitive:
        return value.lower()
    return value


def _equals(actual: Any, expected: Any, case_sensitive: bool) -> bool:
    if actual is None or expected is None:
        return actual is expected
    actual_num, expected_num = _to_number(actual), _to_number(expected)
    if actual_num is not None and expected_num is not None and not (
        isinstance(actual, str) and isinstance(expected, str)
    ):
        return actual_num == expected_num
    return _fold(actual, case_sensitive) == _fold(expected, case_sensitive)


def _contains(actual: Any, expected: Any, case_sensitive: bool) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return _fold(expected, case_sensitive) in _fold(actual, case_sensitive)
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected, case_sensitive) for item in actual)
    return False


def _is_empty(actual: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, str):
        return actual.strip() == ""
    if isinstance(actual, (list, tuple, set, dict)):
        return len(actual) == 0
    return False


def _ordering(compare: Callable[[float, float], bool]) -> Callable[[Any, Any, bool], bool]:
    def evaluate(actual: Any, expected: Any, case_sensitive: bool) -> bool:
        actual_num, expected_num = _to_number(actual), _to_number(expected)
        if actual_num is None or expected_num is None:
            return False
        return compare(actual_num, expected_num)
    return evaluate


OPERATORS: Dict[str, Callable[[Any, Any, bool], bool]] = {
    "eq": _equals,
    "ne": lambda a, e, cs: not _equals(a, e, cs),
    "gt": _ordering(lambda a, e: a > e),
    "gte": _ordering(lambda a, e: a >= e),
    "lt": _ordering(lambda a, e: a < e),
    "lte": _ordering(lambda a, e: a <= e),
    "contains": _contains,
    "not_contains": lambda a, e, cs: not _contains(a, e, cs),
    "is_empty": lambda a, e, cs: _is_empty(a),
    "is_not_empty": lambda a, e, cs: not _is_empty(a),
}


def evaluate_condition(
    data: Dict[str, Any],
    field: str,
    operator: str,
    value: Any = None,
    case_sensitive: bool = False,
) -> bool:
    """
    Evaluate `field operator value` against a lead snapshot's data.

    Raises:
        ValueError: unknown operator (node parsing already rejects these)
    """
    try:
        evaluate = OPERATORS[operator]
    except KeyError:
        raise ValueError(f"Unknown condition operator: {operator}")
    return bool(evaluate(get_field_value(data, field), value, case_sensitive))
