"""
Reconciliation Repositories
"""

from .base import CandidateStore, ReconciliationRepository, RuleRepository
from .memory import InMemoryReconciliationStore

__all__ = [
    "CandidateStore",
    "ReconciliationRepository",
    "RuleRepository",
    "InMemoryReconciliationStore",
]
