"""
Transaction Reconciliation Engine

Matches bank transactions against ledger entries:
- Rule, exact, fuzzy and semantic matching tiers
- Exclusive claiming of ledger entries within a run
- Exception classification for unplaced transactions
- Manual review (confirm, reject, exclude, resolve)
- Audit trail for all operations

Services and the HTTP router are imported from their own modules
(reconciliation.services.*, reconciliation.endpoints.reconciliation_api).
"""

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import (
    ExceptionResolution,
    ExceptionType,
    MatchStatus,
    MatchType,
    SessionStatus,
    TransactionStatus,
)
from reconciliation.errors import ReconciliationError
from reconciliation.models import (
    BankTransaction,
    ExceptionRecord,
    LedgerEntry,
    Match,
    MatchingRule,
    ReconciliationSession,
    SessionStatistics,
)

__all__ = [
    # Configuration
    'ReconciliationConfig',
    # Enums
    'ExceptionResolution',
    'ExceptionType',
    'MatchStatus',
    'MatchType',
    'SessionStatus',
    'TransactionStatus',
    # Errors
    'ReconciliationError',
    # Models
    'BankTransaction',
    'ExceptionRecord',
    'LedgerEntry',
    'Match',
    'MatchingRule',
    'ReconciliationSession',
    'SessionStatistics',
]
