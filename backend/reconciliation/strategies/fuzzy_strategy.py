"""
Fuzzy matching with tolerances.

Weighted score per candidate:
- amount (0.4): 1.0 within amount_tolerance, linear decay to 0 at a 1.00
  delta; candidates beyond 1.00 are excluded
- date (0.3): 1.0 at 0 days, linear decay to 0 at date_tolerance_days
- description (0.3): normalized Levenshtein similarity

Candidates below fuzzy_threshold (closed bound) are discarded. The best
remaining candidate is accepted with confidence capped at 0.99 so a fuzzy
match never reads as certain.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.models import BankTransaction, LedgerEntry
from reconciliation.similarity import description_similarity
from reconciliation.strategies.base import (
    MatchingStrategy,
    ScoredCandidate,
    amount_delta,
    clamp_confidence,
    days_between,
)

logger = logging.getLogger(__name__)

WEIGHT_AMOUNT = 0.4
WEIGHT_DATE = 0.3
WEIGHT_DESCRIPTION = 0.3

MAX_AMOUNT_DELTA = Decimal("1.00")
FUZZY_CONFIDENCE_CAP = 0.99


def score_amount(delta: Decimal, tolerance: Decimal) -> float:
    """
    Amount component in [0, 1]. Non-increasing in delta.
    """
    if delta <= tolerance:
        return 1.0
    if delta >= MAX_AMOUNT_DELTA:
        return 0.0
    return float(1 - (delta - tolerance) / (MAX_AMOUNT_DELTA - tolerance))


def score_date(days: int, tolerance_days: int) -> float:
    """
    Date component in [0, 1]. Non-increasing in days.
    """
    if days <= 0:
        return 1.0
    if tolerance_days <= 0:
        return 0.0
    return max(0.0, 1.0 - days / tolerance_days)


def score_candidate(
    transaction: BankTransaction,
    entry: LedgerEntry,
    config: ReconciliationConfig,
) -> Optional[Tuple[float, dict]]:
    """
    Weighted fuzzy score and criteria for one candidate, or None when the
    amount delta excludes it outright.
    """
    delta = amount_delta(transaction, entry)
    if delta > MAX_AMOUNT_DELTA:
        return None

    days = days_between(transaction, entry)
    amount_score = score_amount(delta, config.amount_tolerance)
    date_score = score_date(days, config.date_tolerance_days)
    similarity = description_similarity(transaction.description, entry.description)

    raw = (
        WEIGHT_AMOUNT * amount_score
        + WEIGHT_DATE * date_score
        + WEIGHT_DESCRIPTION * similarity
    )
    # float noise must not push an exact-threshold score under the bound
    raw = round(raw, 10)

    criteria = {
        "amountDiff": str(delta),
        "daysDiff": days,
        "descriptionSimilarity": round(similarity, 4),
        "amountScore": round(amount_score, 4),
        "dateScore": round(date_score, 4),
        "rawScore": round(raw, 4),
    }
    return raw, criteria


class FuzzyStrategy(MatchingStrategy):
    match_type = MatchType.FUZZY

    async def find_match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
        config: ReconciliationConfig,
    ) -> Optional[ScoredCandidate]:
        best: Optional[Tuple[tuple, LedgerEntry, float, dict]] = None

        for entry in candidates:
            scored = score_candidate(transaction, entry, config)
            if scored is None:
                continue
            raw, criteria = scored
            if raw < config.fuzzy_threshold:
                continue

            # highest score, then smallest amount delta, then nearest date, then id
            rank = (-raw, amount_delta(transaction, entry), criteria["daysDiff"], entry.id)
            if best is None or rank < best[0]:
                best = (rank, entry, raw, criteria)

        if best is None:
            return None

        _, entry, raw, criteria = best
        logger.debug(
            f"Fuzzy candidate {entry.id} for transaction {transaction.id} scored {raw:.4f}"
        )
        return ScoredCandidate(
            ledger_entry_id=entry.id,
            confidence=clamp_confidence(raw, FUZZY_CONFIDENCE_CAP),
            criteria=criteria,
            match_type=self.match_type,
        )
