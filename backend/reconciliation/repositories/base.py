"""
Repository Interfaces

The engine is written against these abstract repositories:
- CandidateStore: bank transactions and ledger entries (external data)
- RuleRepository: matching rules
- ReconciliationRepository: sessions, matches, exceptions, audit rows and
  the reconciliation flags written back to external records

Implementations must enforce the persistence invariants in save_match:
at most one non-rejected match per (session, transaction) and at most one
PENDING/CONFIRMED match per ledger entry.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, AsyncContextManager, Dict, Iterable, List, Optional, Set

from reconciliation.enums import MatchStatus, TransactionStatus
from reconciliation.models import (
    BankTransaction,
    ExceptionRecord,
    LedgerEntry,
    Match,
    MatchingRule,
    ReconciliationSession,
)


class CandidateStore(ABC):
    """Read access to the records being reconciled."""

    @abstractmethod
    async def get_linked_ledger_account(self, account_id: str) -> Optional[str]:
        """Ledger account mapped to a bank account, or None."""

    @abstractmethod
    async def list_unmatched_transactions(
        self, account_id: str, start: date, end: date
    ) -> List[BankTransaction]:
        """UNMATCHED transactions booked within [start, end]."""

    @abstractmethod
    async def list_unreconciled_ledger_entries(
        self, account_id: str, start: date, end: date
    ) -> List[LedgerEntry]:
        """
        Unreconciled entries of the ledger account linked to account_id,
        dated within [start, end].

        Raises:
            AccountNotLinkedError: no ledger mapping for the bank account
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[BankTransaction]:
        ...

    @abstractmethod
    async def get_ledger_entry(self, ledger_entry_id: str) -> Optional[LedgerEntry]:
        ...


class RuleRepository(ABC):
    """Storage for user-authored matching rules."""

    @abstractmethod
    async def list_enabled_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        """Enabled rules for the account plus global rules, lowest priority first."""

    @abstractmethod
    async def list_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        ...

    @abstractmethod
    async def get_rule(self, rule_id: str) -> Optional[MatchingRule]:
        ...

    @abstractmethod
    async def save_rule(self, rule: MatchingRule) -> MatchingRule:
        ...

    @abstractmethod
    async def record_rule_hit(self, rule_id: str, at: datetime) -> None:
        """Increment hit_count and set last_hit_at."""


class ReconciliationRepository(ABC):
    """Persistence for sessions, pipeline outputs and write-backs."""

    # ==================== Units of work ====================

    @abstractmethod
    def atomic(self) -> AsyncContextManager[None]:
        """Writes inside the block commit together or not at all."""

    @abstractmethod
    def run_lock(self, account_id: str, start: date, end: date) -> AsyncContextManager[None]:
        """
        Exclusive pipeline run for an account and period.

        Raises:
            SessionLockedError: a conflicting run holds the lock
        """

    # ==================== Sessions ====================

    @abstractmethod
    async def save_session(self, session: ReconciliationSession) -> ReconciliationSession:
        """Insert or update a session."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ReconciliationSession]:
        ...

    @abstractmethod
    async def list_sessions(self, account_id: Optional[str] = None) -> List[ReconciliationSession]:
        ...

    # ==================== Matches ====================

    @abstractmethod
    async def save_match(self, match: Match) -> Match:
        """
        Insert or update a match.

        Raises:
            DuplicateMatchError: another non-rejected match exists for the
                same (session, transaction)
            LedgerEntryAlreadyClaimedError: another PENDING/CONFIRMED match
                holds the ledger entry
        """

    @abstractmethod
    async def get_match(self, match_id: str) -> Optional[Match]:
        ...

    @abstractmethod
    async def list_matches(
        self, session_id: str, status: Optional[MatchStatus] = None
    ) -> List[Match]:
        ...

    @abstractmethod
    async def list_matches_for_transaction(self, transaction_id: str) -> List[Match]:
        """Every match for a transaction across sessions, oldest first."""

    @abstractmethod
    async def find_claiming_match(self, ledger_entry_id: str) -> Optional[Match]:
        """The PENDING/CONFIRMED match holding a ledger entry, if any."""

    @abstractmethod
    async def claimed_ledger_entry_ids(self, ledger_entry_ids: Iterable[str]) -> Set[str]:
        """Subset of the given ids held by PENDING/CONFIRMED matches."""

    # ==================== Exceptions ====================

    @abstractmethod
    async def save_exception(self, exception: ExceptionRecord) -> ExceptionRecord:
        """Insert or update an exception record."""

    @abstractmethod
    async def get_exception(self, exception_id: str) -> Optional[ExceptionRecord]:
        ...

    @abstractmethod
    async def list_exceptions(
        self, session_id: str, unresolved_only: bool = False
    ) -> List[ExceptionRecord]:
        ...

    @abstractmethod
    async def list_exceptions_for_transaction(self, transaction_id: str) -> List[ExceptionRecord]:
        ...

    # ==================== Write-backs ====================

    @abstractmethod
    async def update_transaction_status(
        self, transaction_id: str, status: TransactionStatus
    ) -> None:
        ...

    @abstractmethod
    async def update_ledger_entry_reconciled(self, ledger_entry_id: str, reconciled: bool) -> None:
        ...

    # ==================== Audit ====================

    @abstractmethod
    async def save_audit_entry(self, entry: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def list_audit_entries(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        ...
