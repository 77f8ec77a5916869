"""
Exact matching: equal absolute amount, equal date and, when the transaction
carries one, equal reference.
"""

from typing import List, Optional

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.models import BankTransaction, LedgerEntry
from reconciliation.strategies.base import (
    MatchingStrategy,
    ScoredCandidate,
    amount_delta,
    reference_matches,
)


class ExactStrategy(MatchingStrategy):
    match_type = MatchType.EXACT

    async def find_match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
        config: ReconciliationConfig,
    ) -> Optional[ScoredCandidate]:
        # lowest id wins when several entries qualify
        for entry in sorted(candidates, key=lambda e: e.id):
            if amount_delta(transaction, entry) != 0:
                continue
            if transaction.booking_date != entry.entry_date:
                continue
            if not reference_matches(transaction, entry):
                continue

            return ScoredCandidate(
                ledger_entry_id=entry.id,
                confidence=1.0,
                criteria={
                    "amountMatch": True,
                    "dateMatch": True,
                    "referenceMatch": True,
                },
                match_type=self.match_type,
            )

        return None
