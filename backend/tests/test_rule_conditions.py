"""
Unit Tests for matching rule conditions

Tests:
- String operators (case-insensitive by default)
- Numeric operators on the signed amount
- AND semantics across conditions
- Rule validation before storage

Run with: pytest backend/tests/test_rule_conditions.py -v
"""

import pytest

from reconciliation.enums import RuleField, RuleOperator
from reconciliation.errors import InvalidRuleError
from reconciliation.matching_rules import evaluate_condition, rule_matches, validate_rule
from reconciliation.models import MatchingRule, RuleAction, RuleCondition


def _rule(*conditions, enabled=True, name="OLX sales"):
    return MatchingRule(
        name=name,
        priority=10,
        conditions=list(conditions),
        action=RuleAction(account_code="402-01", auto_confirm=True),
        enabled=enabled,
    )


class TestStringConditions:
    """Test text field operators."""

    @pytest.fixture
    def transaction(self, make_transaction):
        return make_transaction(
            "tx-1", "149.99",
            description="OLX.pl payout 8812",
            counterparty_name="Grupa OLX Sp. z o.o.",
            reference="REF-8812",
        )

    def test_contains_is_case_insensitive(self, transaction):
        condition = RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "olx")
        assert evaluate_condition(condition, transaction) is True

    def test_contains_case_sensitive(self, transaction):
        condition = RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "olx", case_sensitive=True)
        assert evaluate_condition(condition, transaction) is False

    def test_not_contains(self, transaction):
        condition = RuleCondition(RuleField.DESCRIPTION, RuleOperator.NOT_CONTAINS, "allegro")
        assert evaluate_condition(condition, transaction) is True

    def test_equals_ignores_surrounding_whitespace(self, transaction):
        condition = RuleCondition(RuleField.REFERENCE, RuleOperator.EQUALS, " ref-8812 ")
        assert evaluate_condition(condition, transaction) is True

    def test_starts_and_ends_with(self, transaction):
        starts = RuleCondition(RuleField.COUNTERPARTY, RuleOperator.STARTS_WITH, "grupa")
        ends = RuleCondition(RuleField.COUNTERPARTY, RuleOperator.ENDS_WITH, "o.o.")
        assert evaluate_condition(starts, transaction) is True
        assert evaluate_condition(ends, transaction) is True

    def test_regex(self, transaction):
        condition = RuleCondition(RuleField.DESCRIPTION, RuleOperator.MATCHES_REGEX, r"payout \d{4}$")
        assert evaluate_condition(condition, transaction) is True

    def test_missing_field_value(self, make_transaction):
        transaction = make_transaction("tx-2", "10.00", reference=None)
        condition = RuleCondition(RuleField.REFERENCE, RuleOperator.CONTAINS, "INV")
        assert evaluate_condition(condition, transaction) is False


class TestNumericConditions:
    """Test amount operators."""

    @pytest.fixture
    def transaction(self, make_transaction):
        return make_transaction("tx-1", "-250.00")

    def test_less_than_uses_signed_amount(self, transaction):
        condition = RuleCondition(RuleField.AMOUNT, RuleOperator.LESS_THAN, "0")
        assert evaluate_condition(condition, transaction) is True

    def test_between_is_inclusive(self, transaction):
        condition = RuleCondition(RuleField.AMOUNT, RuleOperator.BETWEEN, ["-250.00", "-100"])
        assert evaluate_condition(condition, transaction) is True

    def test_equals(self, transaction):
        condition = RuleCondition(RuleField.AMOUNT, RuleOperator.EQUALS, -250)
        assert evaluate_condition(condition, transaction) is True

    def test_non_numeric_value_raises(self, transaction):
        condition = RuleCondition(RuleField.AMOUNT, RuleOperator.GREATER_THAN, "lots")
        with pytest.raises(InvalidRuleError):
            evaluate_condition(condition, transaction)


class TestRuleMatches:
    """Test rule-level evaluation."""

    def test_all_conditions_must_hold(self, make_transaction):
        transaction = make_transaction("tx-1", "99.00", description="OLX payout")
        rule = _rule(
            RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "OLX"),
            RuleCondition(RuleField.AMOUNT, RuleOperator.GREATER_THAN, "100"),
        )
        assert rule_matches(rule, transaction) is False

    def test_disabled_rule_never_matches(self, make_transaction):
        transaction = make_transaction("tx-1", "99.00", description="OLX payout")
        rule = _rule(
            RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "OLX"),
            enabled=False,
        )
        assert rule_matches(rule, transaction) is False

    def test_rule_without_conditions_never_matches(self, make_transaction):
        transaction = make_transaction("tx-1", "99.00", description="OLX payout")
        assert rule_matches(_rule(), transaction) is False


class TestValidateRule:
    """Test rule validation."""

    def test_valid_rule(self):
        rule = _rule(RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "OLX"))
        assert validate_rule(rule) is rule

    def test_collects_every_problem(self):
        rule = _rule(
            RuleCondition(RuleField.AMOUNT, RuleOperator.CONTAINS, "5"),
            RuleCondition(RuleField.DESCRIPTION, RuleOperator.BETWEEN, ["a", "b"]),
            RuleCondition(RuleField.DESCRIPTION, RuleOperator.MATCHES_REGEX, "(unclosed"),
            name=" ",
        )

        with pytest.raises(InvalidRuleError) as exc_info:
            validate_rule(rule)

        errors = exc_info.value.details["errors"]
        assert len(errors) == 4
        assert errors[0] == "name is required"

    def test_between_requires_two_values(self):
        rule = _rule(RuleCondition(RuleField.AMOUNT, RuleOperator.BETWEEN, ["1"]))
        with pytest.raises(InvalidRuleError) as exc_info:
            validate_rule(rule)
        assert "between requires [low, high]" in exc_info.value.details["errors"][0]

    def test_requires_conditions(self):
        with pytest.raises(InvalidRuleError):
            validate_rule(_rule())
