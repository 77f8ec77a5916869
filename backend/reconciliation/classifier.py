"""
Exception Classifier

Categorizes a transaction that no strategy could place, using the surviving
candidate pool. "Close" means an absolute amount delta below 1.00.

Checked in order:
1. More than one close candidate    -> MULTIPLE_MATCHES
2. Exactly one close candidate      -> DATE_DISCREPANCY
3. Some description similarity > .5 -> AMOUNT_MISMATCH
4. Otherwise                        -> NO_MATCH_FOUND
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List

from reconciliation.enums import ExceptionType
from reconciliation.models import BankTransaction, LedgerEntry
from reconciliation.similarity import description_similarity
from reconciliation.strategies.base import amount_delta, closest_by_amount, days_between

CLOSE_AMOUNT_DELTA = Decimal("1.00")
DESCRIPTION_SIMILARITY_FLOOR = 0.5
MAX_CANDIDATE_IDS = 5


@dataclass
class Classification:
    exception_type: ExceptionType
    details: Dict[str, Any]
    candidate_ids: List[str] = field(default_factory=list)


class ExceptionClassifier:
    """
    Stateless classifier for unmatched transactions.
    """

    def classify(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
    ) -> Classification:
        if not candidates:
            return Classification(
                exception_type=ExceptionType.NO_MATCH_FOUND,
                details={
                    "reason": "No unclaimed ledger entries in the candidate pool",
                    "candidatesConsidered": 0,
                    "nearestCandidate": None,
                },
            )

        ranked = closest_by_amount(transaction, candidates)
        similarities = {
            e.id: description_similarity(transaction.description, e.description)
            for e in ranked
        }
        close = [e for e in ranked if amount_delta(transaction, e) < CLOSE_AMOUNT_DELTA]

        if len(close) > 1:
            exception_type = ExceptionType.MULTIPLE_MATCHES
            reason = f"{len(close)} candidates within {CLOSE_AMOUNT_DELTA} of the amount"
        elif len(close) == 1:
            exception_type = ExceptionType.DATE_DISCREPANCY
            reason = "One candidate close in amount but outside matching tolerances"
        elif any(s > DESCRIPTION_SIMILARITY_FLOOR for s in similarities.values()):
            exception_type = ExceptionType.AMOUNT_MISMATCH
            reason = "Similar description found with a different amount"
        else:
            exception_type = ExceptionType.NO_MATCH_FOUND
            reason = "No candidate close in amount or description"

        nearest = ranked[0]
        details = {
            "reason": reason,
            "candidatesConsidered": len(candidates),
            "closeCandidates": len(close),
            "nearestCandidate": {
                "id": nearest.id,
                "amountDiff": str(amount_delta(transaction, nearest)),
                "daysDiff": days_between(transaction, nearest),
                "descriptionSimilarity": round(similarities[nearest.id], 4),
            },
        }
        if exception_type == ExceptionType.AMOUNT_MISMATCH:
            best = max(ranked, key=lambda e: similarities[e.id])
            details["mostSimilarCandidate"] = {
                "id": best.id,
                "amountDiff": str(amount_delta(transaction, best)),
                "descriptionSimilarity": round(similarities[best.id], 4),
            }

        return Classification(
            exception_type=exception_type,
            details=details,
            candidate_ids=[e.id for e in ranked[:MAX_CANDIDATE_IDS]],
        )
