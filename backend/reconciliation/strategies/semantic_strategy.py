"""
Semantic matching via the injected SemanticMatcher.

Last tier of the pipeline and its only suspension point. The call is bounded
by semantic_timeout_seconds and never retried within a run. A timeout, an
error, or a proposal outside the offered candidates is "no opinion".
"""

import asyncio
import logging
from typing import List, Optional

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.models import BankTransaction, LedgerEntry
from reconciliation.semantic.client import SemanticMatcher
from reconciliation.strategies.base import (
    MatchingStrategy,
    ScoredCandidate,
    clamp_confidence,
    closest_by_amount,
)

logger = logging.getLogger(__name__)


class SemanticStrategy(MatchingStrategy):
    match_type = MatchType.SEMANTIC

    def __init__(self, matcher: Optional[SemanticMatcher]):
        self.matcher = matcher

    async def find_match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
        config: ReconciliationConfig,
    ) -> Optional[ScoredCandidate]:
        if not config.semantic_enabled or self.matcher is None or not candidates:
            return None

        offered = closest_by_amount(transaction, candidates)[:config.semantic_max_candidates]
        offered_ids = {e.id for e in offered}

        try:
            result = await asyncio.wait_for(
                self.matcher.match(transaction, offered),
                timeout=config.semantic_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Semantic matcher timed out after {config.semantic_timeout_seconds}s "
                f"for transaction {transaction.id}"
            )
            return None
        except Exception as e:
            logger.warning(f"Semantic matcher failed for transaction {transaction.id}: {e}")
            return None

        if result is None:
            return None

        if result.ledger_entry_id not in offered_ids:
            logger.warning(
                f"Semantic matcher proposed {result.ledger_entry_id} for transaction "
                f"{transaction.id}, which was not among the offered candidates"
            )
            return None

        confidence = clamp_confidence(result.confidence)
        if confidence < config.semantic_threshold:
            logger.debug(
                f"Semantic proposal for transaction {transaction.id} below threshold "
                f"({confidence:.4f} < {config.semantic_threshold})"
            )
            return None

        return ScoredCandidate(
            ledger_entry_id=result.ledger_entry_id,
            confidence=confidence,
            criteria={
                "semanticScore": round(confidence, 4),
                "rationale": result.rationale,
            },
            match_type=self.match_type,
        )
