"""
Semantic Matching Boundary
"""

from .client import (
    HttpSemanticMatcher,
    NullSemanticMatcher,
    SemanticMatcher,
    SemanticMatchResult,
    build_semantic_matcher,
)

__all__ = [
    "HttpSemanticMatcher",
    "NullSemanticMatcher",
    "SemanticMatcher",
    "SemanticMatchResult",
    "build_semantic_matcher",
]
