"""Tests for trigger condition evaluation and template rendering."""

import pytest

from src.escalation.domain import Condition, ConditionGroup, TemplateRenderer, TriggerEvaluator


def group(*conditions, logical_operator="and"):
    return ConditionGroup.from_dict({
        "logical_operator": logical_operator,
        "conditions": list(conditions),
    })


def cond(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


PAYLOAD = {
    "days_overdue": 3,
    "risk_score": 72.5,
    "status": "pending",
    "tags": ["gdpr", "audit"],
    "institution": {"name": "Acme Bank", "region": "EU", "branches": [{"code": "B1"}]},
    "notes": None,
}


class TestOperators:
    """Tests for individual comparison operators."""

    @pytest.mark.parametrize("condition,expected", [
        (cond("status", "equals", "pending"), True),
        (cond("status", "not_equals", "pending"), False),
        (cond("days_overdue", "greater_than", 2), True),
        (cond("days_overdue", "greater_than", 3), False),
        (cond("risk_score", "less_than", 80), True),
        (cond("status", "contains", "end"), True),
        (cond("tags", "contains", "gdpr"), True),
        (cond("tags", "not_contains", "sox"), True),
        (cond("institution.region", "in", ["EU", "UK"]), True),
        (cond("institution.region", "not_in", ["EU", "UK"]), False),
        (cond("risk_score", "between", [70, 75]), True),
        (cond("days_overdue", "between", [3, 3]), True),
        (cond("notes", "is_null"), True),
        (cond("missing.field", "is_null"), True),
        (cond("status", "is_not_null"), True),
    ])
    def test_operator(self, condition, expected):
        """Each operator compares the resolved field against the value."""
        assert TriggerEvaluator.matches(group(condition), PAYLOAD) is expected

    def test_nested_path_with_list_index(self):
        """Dotted paths walk mappings and list indexes."""
        assert TriggerEvaluator.resolve_field(PAYLOAD, "institution.branches.0.code") == "B1"
        assert TriggerEvaluator.resolve_field(PAYLOAD, "institution.branches.5.code") is None

    def test_missing_field_does_not_match_comparisons(self):
        """A missing field never satisfies an ordering comparison."""
        assert TriggerEvaluator.matches(group(cond("absent", "greater_than", 0)), PAYLOAD) is False


class TestFailClosed:
    """Malformed conditions evaluate to no match instead of raising."""

    def test_unknown_operator(self):
        """Unknown operators from legacy data are a non-match."""
        condition = Condition(field="days_overdue", operator="roughly", value=3)
        assert TriggerEvaluator.evaluate_condition(condition, PAYLOAD) is False

    def test_type_mismatch(self):
        """Comparing a string with a number is a non-match."""
        assert TriggerEvaluator.matches(group(cond("status", "greater_than", 5)), PAYLOAD) is False

    def test_contains_with_non_string_value(self):
        """Substring test with a non-string operand is a non-match."""
        assert TriggerEvaluator.matches(group(cond("status", "contains", 5)), PAYLOAD) is False

    def test_in_requires_list(self):
        """in/not_in with a scalar value do not match."""
        assert TriggerEvaluator.matches(group(cond("status", "in", "pending")), PAYLOAD) is False
        assert TriggerEvaluator.matches(group(cond("status", "not_in", "x")), PAYLOAD) is False

    def test_between_requires_pair(self):
        """between with a malformed range does not match."""
        assert TriggerEvaluator.matches(group(cond("days_overdue", "between", [1])), PAYLOAD) is False

    def test_unknown_logical_operator(self):
        """An unknown group operator is a non-match."""
        bad = ConditionGroup(logical_operator="xor", conditions=(Condition("status", "equals", "pending"),))
        assert TriggerEvaluator.matches(bad, PAYLOAD) is False


class TestGroups:
    """Tests for and/or groups and nesting."""

    def test_empty_group_matches(self):
        """A rule without conditions fires on any event."""
        assert TriggerEvaluator.matches(ConditionGroup(), {}) is True
        assert TriggerEvaluator.matches(ConditionGroup.from_dict(None), PAYLOAD) is True

    def test_and_requires_all(self):
        g = group(cond("days_overdue", "greater_than", 0), cond("status", "equals", "closed"))
        assert TriggerEvaluator.matches(g, PAYLOAD) is False

    def test_or_requires_any(self):
        g = group(
            cond("days_overdue", "greater_than", 10),
            cond("status", "equals", "pending"),
            logical_operator="or"
        )
        assert TriggerEvaluator.matches(g, PAYLOAD) is True

    def test_nested_groups(self):
        """Groups nest arbitrarily."""
        g = group(
            cond("institution.region", "equals", "EU"),
            {
                "logical_operator": "or",
                "conditions": [
                    cond("risk_score", "greater_than", 90),
                    cond("tags", "contains", "audit"),
                ]
            }
        )
        assert TriggerEvaluator.matches(g, PAYLOAD) is True

    def test_round_trips_through_dict(self):
        """Stored form rebuilds the same group."""
        g = group(cond("a", "equals", 1), {"logical_operator": "or", "conditions": [cond("b", "is_null")]})
        assert ConditionGroup.from_dict(g.to_dict()) == g


class TestValidation:
    """Tests for synchronous rule-creation validation."""

    def test_valid_group_has_no_errors(self):
        data = {"logical_operator": "and", "conditions": [cond("x", "between", [1, 2])]}
        assert TriggerEvaluator.validate(data) == []

    def test_reports_paths(self):
        """Errors name the offending condition path."""
        data = {
            "logical_operator": "and",
            "conditions": [
                cond("x", "approximately", 1),
                {"logical_operator": "nand", "conditions": [cond("", "in", "scalar")]},
            ]
        }
        fields = {e["field"] for e in TriggerEvaluator.validate(data)}

        assert "trigger_condition.conditions[0].operator" in fields
        assert "trigger_condition.conditions[1].logical_operator" in fields
        assert "trigger_condition.conditions[1].conditions[0].field" in fields
        assert "trigger_condition.conditions[1].conditions[0].value" in fields


class TestTemplateRenderer:
    """Tests for {{placeholder}} substitution."""

    def test_substitutes_known_and_nested_values(self):
        context = {"incidentId": "INC1", "payload": {"institution": {"name": "Acme"}}}
        rendered = TemplateRenderer.render("{{incidentId}} at {{ payload.institution.name }}", context)
        assert rendered == "INC1 at Acme"

    def test_leaves_unknown_placeholders(self):
        """Unknown placeholders are left as written."""
        assert TemplateRenderer.render("Hi {{nobody}}", {}) == "Hi {{nobody}}"

    def test_numbers_are_stringified(self):
        assert TemplateRenderer.render("Level {{level}}/{{maxLevel}}", {"level": 2, "maxLevel": 3}) == "Level 2/3"
