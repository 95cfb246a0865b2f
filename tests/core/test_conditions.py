"""
Unit Tests for condition operators
"""

import pytest

from leadflow.core.conditions import OPERATORS, evaluate_condition, get_field_value
from leadflow.core.nodes import CONDITION_OPERATORS


LEAD = {
    "score": 85,
    "company": "Acme Corp",
    "email": "",
    "tags": ["hot", "Enterprise"],
    "custom_fields": {"industry": "SaaS", "employees": "250"},
    "custom_fields.region": "EMEA",
    "stage_id": None,
}


@pytest.mark.unit
def test_every_documented_operator_is_implemented():
    assert set(OPERATORS) == set(CONDITION_OPERATORS)


@pytest.mark.unit
def test_field_lookup():
    assert get_field_value(LEAD, "score") == 85
    assert get_field_value(LEAD, "custom_fields.industry") == "SaaS"
    assert get_field_value(LEAD, "custom_fields.region") == "EMEA"
    assert get_field_value(LEAD, "custom_fields.missing") is None
    assert get_field_value(LEAD, "score.value") is None


@pytest.mark.unit
@pytest.mark.parametrize("field,operator,value,expected", [
    ("score", "gte", 80, True),
    ("score", "gte", 85, True),
    ("score", "gt", 85, False),
    ("score", "lt", 100, True),
    ("score", "lte", 84, False),
    ("score", "eq", "85", True),
    ("score", "ne", 85, False),
    ("custom_fields.employees", "gt", 200, True),
    ("company", "eq", "acme corp", True),
    ("company", "contains", "ACME", True),
    ("company", "not_contains", "Globex", True),
    ("tags", "contains", "enterprise", True),
    ("tags", "contains", "cold", False),
    ("email", "is_empty", None, True),
    ("stage_id", "is_empty", None, True),
    ("tags", "is_not_empty", None, True),
    ("missing", "is_empty", None, True),
])
def test_operators(field, operator, value, expected):
    assert evaluate_condition(LEAD, field, operator, value) is expected


@pytest.mark.unit
def test_case_sensitive_flag():
    assert evaluate_condition(LEAD, "company", "eq", "acme corp", case_sensitive=True) is False
    assert evaluate_condition(LEAD, "company", "eq", "Acme Corp", case_sensitive=True) is True
    assert evaluate_condition(LEAD, "company", "contains", "acme", case_sensitive=True) is False


@pytest.mark.unit
@pytest.mark.parametrize("operator", ["gt", "gte", "lt", "lte"])
def test_ordering_on_non_numbers_is_false(operator):
    assert evaluate_condition(LEAD, "company", operator, 10) is False
    assert evaluate_condition(LEAD, "missing", operator, 10) is False


@pytest.mark.unit
def test_exactly_one_branch_for_any_value():
    """Every operator yields a plain bool, so a condition always picks true or false"""
    for operator in CONDITION_OPERATORS:
        for field in ("score", "company", "tags", "missing", "custom_fields"):
            assert evaluate_condition(LEAD, field, operator, 42) in (True, False)


@pytest.mark.unit
def test_unknown_operator():
    with pytest.raises(ValueError, match="Unknown condition operator"):
        evaluate_condition(LEAD, "score", "between", 1)
