"""
Rule-based matching.

Enabled rules are tried in ascending priority. The first rule whose
conditions all hold and whose target account code is carried by a pool
member wins. Among several pool members with that account code the closest
in amount, then date, then lowest id is taken.
"""

import logging
from typing import List, Optional

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.matching_rules.conditions import rule_matches
from reconciliation.models import BankTransaction, LedgerEntry, MatchingRule
from reconciliation.strategies.base import (
    MatchingStrategy,
    ScoredCandidate,
    amount_delta,
    closest_by_amount,
    days_between,
    reference_matches,
)

logger = logging.getLogger(__name__)

RULE_CONFIDENCE_AUTO_CONFIRM = 1.0
RULE_CONFIDENCE = 0.9


class RuleStrategy(MatchingStrategy):
    match_type = MatchType.RULE

    def __init__(self, rules: List[MatchingRule]):
        self.rules = sorted(
            (r for r in rules if r.enabled),
            key=lambda r: (r.priority, r.name, r.id)
        )

    async def find_match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
        config: ReconciliationConfig,
    ) -> Optional[ScoredCandidate]:
        if not self.rules or not candidates:
            return None

        for rule in self.rules:
            if not rule_matches(rule, transaction):
                continue

            account_code = rule.action.account_code
            targets = [e for e in candidates if e.account_code == account_code]
            if not targets:
                logger.debug(
                    f"Rule {rule.name} matched transaction {transaction.id} "
                    f"but no candidate carries account {account_code}"
                )
                continue

            entry = closest_by_amount(transaction, targets)[0]
            confidence = (
                RULE_CONFIDENCE_AUTO_CONFIRM if rule.action.auto_confirm else RULE_CONFIDENCE
            )

            return ScoredCandidate(
                ledger_entry_id=entry.id,
                confidence=confidence,
                criteria={
                    "ruleId": rule.id,
                    "ruleName": rule.name,
                    "accountCode": account_code,
                    "amountMatch": amount_delta(transaction, entry) == 0,
                    "dateMatch": days_between(transaction, entry) == 0,
                    "referenceMatch": reference_matches(transaction, entry),
                },
                match_type=self.match_type,
                rule_id=rule.id,
            )

        return None
