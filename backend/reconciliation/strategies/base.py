"""
Matching Strategy Base

Shared scoring primitives for the matching tiers. Every strategy returns a
ScoredCandidate with confidence in [0, 1] and a criteria dict that is
persisted verbatim on the resulting match.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.models import BankTransaction, LedgerEntry


@dataclass
class ScoredCandidate:
    """
    A ledger entry proposed by a strategy for a transaction.
    """
    ledger_entry_id: str
    confidence: float
    criteria: Dict[str, Any]
    match_type: MatchType
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_entry_id": self.ledger_entry_id,
            "confidence": self.confidence,
            "criteria": self.criteria,
            "match_type": self.match_type.value,
            "rule_id": self.rule_id,
        }


def clamp_confidence(value: float, ceiling: float = 1.0) -> float:
    """Clamp a score into [0, ceiling]."""
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(ceiling, float(value)))


def amount_delta(transaction: BankTransaction, entry: LedgerEntry) -> Decimal:
    """Absolute difference between absolute amounts."""
    return abs(abs(transaction.amount) - abs(entry.amount))


def days_between(transaction: BankTransaction, entry: LedgerEntry) -> int:
    return abs((transaction.booking_date - entry.entry_date).days)


def reference_matches(transaction: BankTransaction, entry: LedgerEntry) -> bool:
    """
    Reference check for exact/rule criteria.

    An empty transaction reference skips the check.
    """
    reference = (transaction.reference or "").strip()
    if not reference:
        return True
    return reference == (entry.reference or "").strip()


def closest_by_amount(
    transaction: BankTransaction,
    entries: List[LedgerEntry],
) -> List[LedgerEntry]:
    """Entries ordered by amount delta, then date distance, then id."""
    return sorted(
        entries,
        key=lambda e: (amount_delta(transaction, e), days_between(transaction, e), e.id)
    )


class MatchingStrategy(ABC):
    """
    One tier of the matching pipeline.

    Strategies are pure with respect to the pool: they only read the
    candidate snapshot they are given. Claiming is done by the pipeline.
    """

    match_type: MatchType

    @abstractmethod
    async def find_match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
        config: ReconciliationConfig,
    ) -> Optional[ScoredCandidate]:
        """Return the accepted candidate, or None to fall through to the next tier."""
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self.match_type.value.lower()

