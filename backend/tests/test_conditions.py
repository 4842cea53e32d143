"""Tests for condition evaluation, path resolution and token templates."""

from datetime import datetime, timezone

import pytest

from core.constants import ConditionLogic, ConditionOperator
from workflow.conditions import ConditionEvaluator, resolve_path, to_datetime
from workflow.models import Condition, ConditionGroup

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def evaluator():
    return ConditionEvaluator(clock=lambda: NOW)


def cond(field, operator, value=None, **kwargs):
    return Condition(field=field, operator=operator, value=value, **kwargs)


# ─── Path resolution ───

@pytest.mark.unit
class TestResolvePath:
    def test_nested_dict(self):
        assert resolve_path("process.manager.email", {"process": {"manager": {"email": "m@x.com"}}}) == "m@x.com"

    def test_list_index(self):
        ctx = {"laptops": [{"serial": "A1"}, {"serial": "B2"}]}
        assert resolve_path("laptops[1].serial", ctx) == "B2"

    def test_numeric_segment(self):
        assert resolve_path("items.0", {"items": ["first"]}) == "first"

    def test_missing_returns_default(self):
        assert resolve_path("a.b.c", {"a": {}}) is None
        assert resolve_path("a.b", {"a": None}, default="x") == "x"

    def test_index_out_of_range(self):
        assert resolve_path("items[5]", {"items": [1, 2]}) is None


# ─── Operators ───

@pytest.mark.unit
class TestOperators:
    def test_equals_is_case_insensitive(self, evaluator):
        assert evaluator.evaluate_condition(cond("department", "eq", "FINANCE"), {"department": "Finance"})

    def test_equals_coerces_numbers(self, evaluator):
        assert evaluator.evaluate_condition(cond("grade", "eq", 5), {"grade": "5"})
        assert evaluator.evaluate_condition(cond("grade", "eq", "5.0"), {"grade": 5})

    def test_equals_coerces_booleans(self, evaluator):
        assert evaluator.evaluate_condition(cond("remote", "eq", True), {"remote": "yes"})
        assert not evaluator.evaluate_condition(cond("remote", "eq", True), {"remote": "no"})

    def test_not_equals(self, evaluator):
        assert evaluator.evaluate_condition(cond("department", "ne", "IT"), {"department": "HR"})

    def test_contains_string_and_list(self, evaluator):
        assert evaluator.evaluate_condition(cond("title", "contains", "engineer"), {"title": "Senior Engineer"})
        assert evaluator.evaluate_condition(cond("tags", "contains", "VIP"), {"tags": ["vip", "remote"]})
        assert not evaluator.evaluate_condition(cond("count", "contains", "1"), {"count": 10})

    def test_starts_and_ends_with(self, evaluator):
        ctx = {"email": "Jane.Doe@Example.com"}
        assert evaluator.evaluate_condition(cond("email", "startsWith", "jane"), ctx)
        assert evaluator.evaluate_condition(cond("email", "endsWith", "@example.COM"), ctx)

    def test_numeric_ordering(self, evaluator):
        ctx = {"salary": "55000"}
        assert evaluator.evaluate_condition(cond("salary", "gt", 50000), ctx)
        assert evaluator.evaluate_condition(cond("salary", "gte", "55000"), ctx)
        assert evaluator.evaluate_condition(cond("salary", "lt", 60000), ctx)
        assert evaluator.evaluate_condition(cond("salary", "lte", 55000), ctx)
        assert not evaluator.evaluate_condition(cond("salary", "lt", 55000), ctx)

    def test_ordering_of_non_comparable_values_is_false(self, evaluator):
        assert not evaluator.evaluate_condition(cond("name", "gt", "abc"), {"name": "xyz"})

    def test_empty_checks(self, evaluator):
        assert evaluator.evaluate_condition(cond("missing", "isEmpty"), {})
        assert evaluator.evaluate_condition(cond("blank", "isEmpty"), {"blank": "   "})
        assert evaluator.evaluate_condition(cond("items", "isEmpty"), {"items": []})
        assert evaluator.evaluate_condition(cond("zero", "isNotEmpty"), {"zero": 0})

    def test_in_accepts_list_json_and_csv(self, evaluator):
        ctx = {"country": "de"}
        assert evaluator.evaluate_condition(cond("country", "in", ["DE", "AT"]), ctx)
        assert evaluator.evaluate_condition(cond("country", "in", '["FR", "DE"]'), ctx)
        assert evaluator.evaluate_condition(cond("country", "in", "FR, DE"), ctx)
        assert evaluator.evaluate_condition(cond("country", "notIn", ["FR"]), ctx)

    def test_in_with_non_collection_is_false(self, evaluator):
        assert not evaluator.evaluate_condition(cond("country", "in", 5), {"country": "DE"})

    def test_value_field_compares_two_fields(self, evaluator):
        ctx = {"newDepartment": "Sales", "oldDepartment": "sales"}
        assert evaluator.evaluate_condition(cond("newDepartment", "eq", valueField="oldDepartment"), ctx)


# ─── Dates ───

@pytest.mark.unit
class TestDateOperators:
    def test_date_before_and_after(self, evaluator):
        ctx = {"startDate": "2026-03-10"}
        assert evaluator.evaluate_condition(cond("startDate", "dateAfter", "@today"), ctx)
        assert evaluator.evaluate_condition(cond("startDate", "dateBefore", "@today+30"), ctx)
        assert not evaluator.evaluate_condition(cond("startDate", "dateBefore", "@today-1"), ctx)

    def test_date_equals_ignores_time(self, evaluator):
        assert evaluator.evaluate_condition(cond("lastDay", "dateEquals", "@today"), {"lastDay": "2026-03-02T17:00:00Z"})

    def test_unparseable_date_is_false(self, evaluator):
        assert not evaluator.evaluate_condition(cond("startDate", "dateAfter", "@today"), {"startDate": "soon"})

    def test_to_datetime_tokens(self):
        assert to_datetime("@now", NOW) == NOW
        assert to_datetime("@today+1", NOW) == datetime(2026, 3, 3, tzinfo=timezone.utc)
        assert to_datetime("2026-01-05T10:00:00", NOW).tzinfo == timezone.utc
        assert to_datetime(None) is None


# ─── Groups ───

@pytest.mark.unit
class TestGroups:
    def test_empty_lists_hold(self, evaluator):
        assert evaluator.evaluate_conditions([], {})
        assert evaluator.evaluate_condition_groups([], {})
        assert evaluator.evaluate_condition_group(ConditionGroup(), {})

    def test_or_group(self, evaluator):
        group = ConditionGroup(
            conditions=[cond("department", "eq", "IT"), cond("department", "eq", "HR")],
            logic=ConditionLogic.OR,
        )
        assert evaluator.evaluate_condition_group(group, {"department": "hr"})
        assert not evaluator.evaluate_condition_group(group, {"department": "Sales"})

    def test_groups_are_anded(self, evaluator):
        groups = [
            ConditionGroup(conditions=[cond("department", "eq", "IT")]),
            ConditionGroup(conditions=[cond("remote", "eq", True)]),
        ]
        assert evaluator.evaluate_condition_groups(groups, {"department": "IT", "remote": True})
        assert not evaluator.evaluate_condition_groups(groups, {"department": "IT", "remote": False})

    def test_groups_parse_from_camel_case(self, evaluator):
        group = ConditionGroup.model_validate(
            {"logic": "AND", "conditions": [{"field": "grade", "operator": "gte", "value": 7}]}
        )
        assert group.conditions[0].operator == ConditionOperator.GREATER_THAN_OR_EQUAL
        assert evaluator.evaluate_condition_group(group, {"grade": 9})


# ─── Expressions & templates ───

@pytest.mark.unit
class TestExpressionsAndTokens:
    def test_expression_field_reference(self, evaluator):
        assert evaluator.evaluate_expression("employee.name", {"employee": {"name": "Ann"}}) == "Ann"

    def test_expression_json_literal(self, evaluator):
        assert evaluator.evaluate_expression("[1, 2]", {}) == [1, 2]
        assert evaluator.evaluate_expression("42", {}) == 42

    def test_expression_unresolved_falls_back_to_text(self, evaluator):
        assert evaluator.evaluate_expression("unknown.path", {}) == "unknown.path"

    def test_replace_tokens(self, evaluator):
        ctx = {"employeeName": "Ann", "variables": {"laptop": {"model": "X1"}}, "remote": True}
        text = evaluator.replace_tokens("Welcome {{employeeName}}: {{ variables.laptop.model }} ({{remote}})", ctx)
        assert text == "Welcome Ann: X1 (true)"

    def test_unresolved_tokens_are_kept(self, evaluator):
        assert evaluator.replace_tokens("Hi {{missing}}", {}) == "Hi {{missing}}"

    def test_empty_template(self, evaluator):
        assert evaluator.replace_tokens(None, {}) == ""
