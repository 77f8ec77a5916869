"""
Matching Strategies

Tiers of the matching pipeline, run in order: rule, exact, fuzzy, semantic.
"""

from .base import MatchingStrategy, ScoredCandidate, clamp_confidence
from .exact_strategy import ExactStrategy
from .fuzzy_strategy import FuzzyStrategy
from .rule_strategy import RuleStrategy
from .semantic_strategy import SemanticStrategy

__all__ = [
    "MatchingStrategy",
    "ScoredCandidate",
    "clamp_confidence",
    "ExactStrategy",
    "FuzzyStrategy",
    "RuleStrategy",
    "SemanticStrategy",
]
