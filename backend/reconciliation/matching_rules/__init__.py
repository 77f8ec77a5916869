"""
Matching Rules Module
"""

from .conditions import evaluate_condition, rule_matches, validate_rule

__all__ = ["evaluate_condition", "rule_matches", "validate_rule"]
