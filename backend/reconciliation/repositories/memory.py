"""
In-Memory Repositories

Dict-backed implementation of CandidateStore, RuleRepository and
ReconciliationRepository. Used by the test suite and for local runs without
a database. Stored records are copies, so callers cannot bypass the
persistence invariants by mutating returned objects.
"""

import copy
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from reconciliation.enums import MatchStatus, TransactionStatus
from reconciliation.errors import (
    AccountNotLinkedError,
    DuplicateMatchError,
    LedgerEntryAlreadyClaimedError,
    LedgerEntryNotFoundError,
    SessionLockedError,
    TransactionNotFoundError,
)
from reconciliation.models import (
    AccountMapping,
    BankTransaction,
    ExceptionRecord,
    LedgerEntry,
    Match,
    MatchingRule,
    ReconciliationSession,
)
from reconciliation.repositories.base import (
    CandidateStore,
    ReconciliationRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)


def _periods_overlap(a: Tuple[date, date], b: Tuple[date, date]) -> bool:
    return a[0] <= b[1] and b[0] <= a[1]


class InMemoryReconciliationStore(CandidateStore, RuleRepository, ReconciliationRepository):
    """
    Single in-process store implementing every repository interface.
    """

    def __init__(self):
        self.transactions: Dict[str, BankTransaction] = {}
        self.ledger_entries: Dict[str, LedgerEntry] = {}
        self.mappings: Dict[str, str] = {}
        self.rules: Dict[str, MatchingRule] = {}
        self.sessions: Dict[str, ReconciliationSession] = {}
        self.matches: Dict[str, Match] = {}
        self.exceptions: Dict[str, ExceptionRecord] = {}
        self.audit_log: List[Dict[str, Any]] = []
        self._run_locks: Dict[str, List[Tuple[date, date]]] = {}
        self._atomic_depth = 0

    # ==================== Seeding ====================

    def add_transaction(self, transaction: BankTransaction) -> BankTransaction:
        self.transactions[transaction.id] = copy.deepcopy(transaction)
        return transaction

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        self.ledger_entries[entry.id] = copy.deepcopy(entry)
        return entry

    def link_account(self, mapping: AccountMapping) -> None:
        self.mappings[mapping.bank_account_id] = mapping.ledger_account_id

    # ==================== CandidateStore ====================

    async def get_linked_ledger_account(self, account_id: str) -> Optional[str]:
        return self.mappings.get(account_id)

    async def list_unmatched_transactions(
        self, account_id: str, start: date, end: date
    ) -> List[BankTransaction]:
        found = [
            copy.deepcopy(t) for t in self.transactions.values()
            if t.account_id == account_id
            and t.reconciliation_status == TransactionStatus.UNMATCHED
            and start <= t.booking_date <= end
        ]
        return sorted(found, key=lambda t: (t.booking_date, t.id))

    async def list_unreconciled_ledger_entries(
        self, account_id: str, start: date, end: date
    ) -> List[LedgerEntry]:
        ledger_account_id = self.mappings.get(account_id)
        if ledger_account_id is None:
            raise AccountNotLinkedError(
                f"Bank account {account_id} has no linked ledger account",
                details={"account_id": account_id}
            )
        found = [
            copy.deepcopy(e) for e in self.ledger_entries.values()
            if e.ledger_account_id == ledger_account_id
            and not e.reconciled
            and start <= e.entry_date <= end
        ]
        return sorted(found, key=lambda e: (e.entry_date, e.id))

    async def get_transaction(self, transaction_id: str) -> Optional[BankTransaction]:
        transaction = self.transactions.get(transaction_id)
        return copy.deepcopy(transaction) if transaction else None

    async def get_ledger_entry(self, ledger_entry_id: str) -> Optional[LedgerEntry]:
        entry = self.ledger_entries.get(ledger_entry_id)
        return copy.deepcopy(entry) if entry else None

    # ==================== RuleRepository ====================

    async def list_enabled_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        rules = [
            r for r in self.rules.values()
            if r.enabled and (r.account_id is None or r.account_id == account_id)
        ]
        return [copy.deepcopy(r) for r in sorted(rules, key=lambda r: (r.priority, r.name, r.id))]

    async def list_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        rules = [
            r for r in self.rules.values()
            if account_id is None or r.account_id in (None, account_id)
        ]
        return [copy.deepcopy(r) for r in sorted(rules, key=lambda r: (r.priority, r.name, r.id))]

    async def get_rule(self, rule_id: str) -> Optional[MatchingRule]:
        rule = self.rules.get(rule_id)
        return copy.deepcopy(rule) if rule else None

    async def save_rule(self, rule: MatchingRule) -> MatchingRule:
        self.rules[rule.id] = copy.deepcopy(rule)
        return rule

    async def record_rule_hit(self, rule_id: str, at: datetime) -> None:
        rule = self.rules.get(rule_id)
        if rule is None:
            logger.warning(f"Rule hit recorded for unknown rule {rule_id}")
            return
        rule.hit_count += 1
        rule.last_hit_at = at

    # ==================== Units of work ====================

    @asynccontextmanager
    async def atomic(self):
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield
            finally:
                self._atomic_depth -= 1
            return

        snapshot = copy.deepcopy((self.transactions, self.ledger_entries, self.matches, self.exceptions))
        self._atomic_depth = 1
        try:
            yield
        except BaseException:
            self.transactions, self.ledger_entries, self.matches, self.exceptions = snapshot
            raise
        finally:
            self._atomic_depth = 0

    @asynccontextmanager
    async def run_lock(self, account_id: str, start: date, end: date):
        period = (start, end)
        held = self._run_locks.setdefault(account_id, [])
        for other in held:
            if _periods_overlap(period, other):
                raise SessionLockedError(
                    f"A reconciliation run for account {account_id} overlapping "
                    f"{start} - {end} is already in progress",
                    details={
                        "account_id": account_id,
                        "locked_period": [other[0].isoformat(), other[1].isoformat()],
                    }
                )
        held.append(period)
        try:
            yield
        finally:
            held.remove(period)

    # ==================== Sessions ====================

    async def save_session(self, session: ReconciliationSession) -> ReconciliationSession:
        self.sessions[session.id] = copy.deepcopy(session)
        return session

    async def get_session(self, session_id: str) -> Optional[ReconciliationSession]:
        session = self.sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def list_sessions(self, account_id: Optional[str] = None) -> List[ReconciliationSession]:
        sessions = [
            s for s in self.sessions.values()
            if account_id is None or s.account_id == account_id
        ]
        return [copy.deepcopy(s) for s in sorted(sessions, key=lambda s: s.started_at, reverse=True)]

    # ==================== Matches ====================

    async def save_match(self, match: Match) -> Match:
        for other in self.matches.values():
            if other.id == match.id:
                continue
            if (
                match.status != MatchStatus.REJECTED
                and other.status != MatchStatus.REJECTED
                and other.session_id == match.session_id
                and other.transaction_id == match.transaction_id
            ):
                raise DuplicateMatchError(
                    f"Transaction {match.transaction_id} already has an active match "
                    f"in session {match.session_id}",
                    details={"existing_match_id": other.id, "transaction_id": match.transaction_id}
                )
            if (
                match.status.claims_ledger_entry
                and other.status.claims_ledger_entry
                and match.ledger_entry_id is not None
                and other.ledger_entry_id == match.ledger_entry_id
            ):
                raise LedgerEntryAlreadyClaimedError(
                    f"Ledger entry {match.ledger_entry_id} is already claimed",
                    details={"existing_match_id": other.id, "ledger_entry_id": match.ledger_entry_id}
                )

        self.matches[match.id] = copy.deepcopy(match)
        return match

    async def get_match(self, match_id: str) -> Optional[Match]:
        match = self.matches.get(match_id)
        return copy.deepcopy(match) if match else None

    async def list_matches(
        self, session_id: str, status: Optional[MatchStatus] = None
    ) -> List[Match]:
        matches = [
            m for m in self.matches.values()
            if m.session_id == session_id and (status is None or m.status == status)
        ]
        return [copy.deepcopy(m) for m in sorted(matches, key=lambda m: (m.created_at, m.id))]

    async def list_matches_for_transaction(self, transaction_id: str) -> List[Match]:
        matches = [m for m in self.matches.values() if m.transaction_id == transaction_id]
        return [copy.deepcopy(m) for m in sorted(matches, key=lambda m: (m.created_at, m.id))]

    async def find_claiming_match(self, ledger_entry_id: str) -> Optional[Match]:
        for match in self.matches.values():
            if match.ledger_entry_id == ledger_entry_id and match.status.claims_ledger_entry:
                return copy.deepcopy(match)
        return None

    async def claimed_ledger_entry_ids(self, ledger_entry_ids: Iterable[str]) -> Set[str]:
        wanted = set(ledger_entry_ids)
        return {
            m.ledger_entry_id for m in self.matches.values()
            if m.ledger_entry_id in wanted and m.status.claims_ledger_entry
        }

    # ==================== Exceptions ====================

    async def save_exception(self, exception: ExceptionRecord) -> ExceptionRecord:
        self.exceptions[exception.id] = copy.deepcopy(exception)
        return exception

    async def get_exception(self, exception_id: str) -> Optional[ExceptionRecord]:
        exception = self.exceptions.get(exception_id)
        return copy.deepcopy(exception) if exception else None

    async def list_exceptions(
        self, session_id: str, unresolved_only: bool = False
    ) -> List[ExceptionRecord]:
        exceptions = [
            e for e in self.exceptions.values()
            if e.session_id == session_id and not (unresolved_only and e.is_resolved)
        ]
        return [copy.deepcopy(e) for e in sorted(exceptions, key=lambda e: (e.created_at, e.id))]

    async def list_exceptions_for_transaction(self, transaction_id: str) -> List[ExceptionRecord]:
        exceptions = [e for e in self.exceptions.values() if e.transaction_id == transaction_id]
        return [copy.deepcopy(e) for e in sorted(exceptions, key=lambda e: (e.created_at, e.id))]

    # ==================== Write-backs ====================

    async def update_transaction_status(
        self, transaction_id: str, status: TransactionStatus
    ) -> None:
        transaction = self.transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        transaction.reconciliation_status = status

    async def update_ledger_entry_reconciled(self, ledger_entry_id: str, reconciled: bool) -> None:
        entry = self.ledger_entries.get(ledger_entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(f"Ledger entry {ledger_entry_id} not found")
        entry.reconciled = reconciled

    # ==================== Audit ====================

    async def save_audit_entry(self, entry: Dict[str, Any]) -> None:
        self.audit_log.append(copy.deepcopy(entry))

    async def list_audit_entries(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(e) for e in self.audit_log
            if session_id is None or e.get("session_id") == session_id
        ]
