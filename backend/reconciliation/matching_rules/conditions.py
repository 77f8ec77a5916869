"""
Matching Rule Conditions

Evaluates user-authored (field, operator, value) conditions against a bank
transaction. A rule's conditions are ANDed. String comparisons are
case-insensitive unless the condition says otherwise; numeric comparisons
use Decimal on the signed transaction amount.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from reconciliation.enums import (
    NUMERIC_OPERATORS,
    STRING_OPERATORS,
    RuleField,
    RuleOperator,
)
from reconciliation.errors import InvalidRuleError
from reconciliation.models import BankTransaction, MatchingRule, RuleCondition

logger = logging.getLogger(__name__)


def _field_value(transaction: BankTransaction, rule_field: RuleField) -> Any:
    if rule_field == RuleField.DESCRIPTION:
        return transaction.description
    if rule_field == RuleField.COUNTERPARTY:
        return transaction.counterparty_name
    if rule_field == RuleField.REFERENCE:
        return transaction.reference
    if rule_field == RuleField.AMOUNT:
        return transaction.amount
    if rule_field == RuleField.CURRENCY:
        return transaction.currency
    raise InvalidRuleError(f"Unsupported rule field: {rule_field}")


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRuleError(f"Expected a numeric value, got {value!r}")


def _evaluate_numeric(actual: Decimal, operator: RuleOperator, value: Any) -> bool:
    if operator == RuleOperator.BETWEEN:
        low, high = (_to_decimal(v) for v in value)
        return low <= actual <= high

    expected = _to_decimal(value)
    if operator == RuleOperator.EQUALS:
        return actual == expected
    if operator == RuleOperator.NOT_EQUALS:
        return actual != expected
    if operator == RuleOperator.GREATER_THAN:
        return actual > expected
    if operator == RuleOperator.LESS_THAN:
        return actual < expected
    raise InvalidRuleError(f"Operator {operator.value} is not valid for numeric fields")


def _evaluate_string(actual: Optional[str], condition: RuleCondition) -> bool:
    operator = condition.operator
    text = actual or ""
    expected = "" if condition.value is None else str(condition.value)

    if operator == RuleOperator.MATCHES_REGEX:
        flags = 0 if condition.case_sensitive else re.IGNORECASE
        return re.search(expected, text, flags) is not None

    if not condition.case_sensitive:
        text = text.lower()
        expected = expected.lower()

    if operator == RuleOperator.EQUALS:
        return text.strip() == expected.strip()
    if operator == RuleOperator.NOT_EQUALS:
        return text.strip() != expected.strip()
    if operator == RuleOperator.CONTAINS:
        return expected in text
    if operator == RuleOperator.NOT_CONTAINS:
        return expected not in text
    if operator == RuleOperator.STARTS_WITH:
        return text.strip().startswith(expected)
    if operator == RuleOperator.ENDS_WITH:
        return text.strip().endswith(expected)
    raise InvalidRuleError(f"Operator {operator.value} is not valid for text fields")


def evaluate_condition(condition: RuleCondition, transaction: BankTransaction) -> bool:
    """Evaluate one condition against a transaction."""
    actual = _field_value(transaction, condition.field)

    if condition.field == RuleField.AMOUNT:
        return _evaluate_numeric(_to_decimal(actual), condition.operator, condition.value)

    return _evaluate_string(actual, condition)


def rule_matches(rule: MatchingRule, transaction: BankTransaction) -> bool:
    """
    True if every condition of an enabled rule holds for the transaction.

    A rule without conditions never matches.
    """
    if not rule.enabled or not rule.conditions:
        return False

    for condition in rule.conditions:
        if not evaluate_condition(condition, transaction):
            return False
    return True


def validate_rule(rule: MatchingRule) -> MatchingRule:
    """
    Check a rule is well-formed before it is stored.

    Raises:
        InvalidRuleError with the list of problems found
    """
    errors: List[str] = []

    if not rule.name or not rule.name.strip():
        errors.append("name is required")
    if not rule.action.account_code or not rule.action.account_code.strip():
        errors.append("action.account_code is required")
    if not rule.conditions:
        errors.append("at least one condition is required")

    for index, condition in enumerate(rule.conditions):
        prefix = f"conditions[{index}]"
        if condition.field == RuleField.AMOUNT:
            if condition.operator not in NUMERIC_OPERATORS:
                errors.append(f"{prefix}: operator {condition.operator.value} is not valid for amount")
                continue
            values = condition.value if condition.operator == RuleOperator.BETWEEN else [condition.value]
            if condition.operator == RuleOperator.BETWEEN and (
                not isinstance(condition.value, (list, tuple)) or len(condition.value) != 2
            ):
                errors.append(f"{prefix}: between requires [low, high]")
                continue
            for v in values:
                try:
                    Decimal(str(v))
                except (InvalidOperation, ValueError, TypeError):
                    errors.append(f"{prefix}: {v!r} is not a number")
        else:
            if condition.operator not in STRING_OPERATORS:
                errors.append(
                    f"{prefix}: operator {condition.operator.value} is not valid for {condition.field.value}"
                )
                continue
            if condition.operator == RuleOperator.MATCHES_REGEX:
                try:
                    re.compile(str(condition.value))
                except re.error as e:
                    errors.append(f"{prefix}: invalid regular expression ({e})")

    if errors:
        raise InvalidRuleError(
            f"Invalid matching rule '{rule.name}'",
            details={"errors": errors}
        )
    return rule
