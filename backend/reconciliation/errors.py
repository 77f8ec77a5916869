"""
Reconciliation Errors

Exception taxonomy for the reconciliation engine:
- Configuration errors: fail fast, no session is created
- State errors: operation not valid for the current session/match state
- Resource errors: candidate store unavailable, session is failed
- Collaborator errors: semantic matcher failures, recovered locally
- Data integrity errors: rejected at the persistence boundary, retryable
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation engine errors."""

    code = "reconciliation_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


# ==================== Configuration Errors ====================

class InvalidPeriodError(ReconciliationError):
    code = "invalid_period"


class AccountNotLinkedError(ReconciliationError):
    """The bank account has no ledger account mapping configured."""
    code = "account_not_linked"


class InvalidConfigurationError(ReconciliationError):
    code = "invalid_configuration"


class InvalidRuleError(ReconciliationError):
    code = "invalid_rule"


# ==================== State Errors ====================

class SessionNotFoundError(ReconciliationError):
    code = "session_not_found"


class SessionNotInProgressError(ReconciliationError):
    code = "session_not_in_progress"


class SessionLockedError(ReconciliationError):
    """Another run holds the lock for the same account and an overlapping period."""
    code = "session_locked"
    retryable = True


class MatchNotFoundError(ReconciliationError):
    code = "match_not_found"


class ExceptionNotFoundError(ReconciliationError):
    code = "exception_not_found"


class ExceptionAlreadyResolvedError(ReconciliationError):
    code = "exception_already_resolved"


class InvalidMatchStateError(ReconciliationError):
    """The match is not in a status that allows the requested change."""
    code = "invalid_match_state"


class InvalidResolutionError(ReconciliationError):
    code = "invalid_resolution"


class TransactionNotFoundError(ReconciliationError):
    code = "transaction_not_found"


class LedgerEntryNotFoundError(ReconciliationError):
    code = "ledger_entry_not_found"


# ==================== Resource Errors ====================

class CandidateStoreUnavailableError(ReconciliationError):
    code = "candidate_store_unavailable"
    retryable = True


class SessionFailedError(ReconciliationError):
    """
    Raised when a pipeline run aborts. Carries the statistics accumulated
    up to the failure point.
    """
    code = "session_failed"

    def __init__(self, message: str, session_id: str, statistics: Optional[Any] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.session_id = session_id
        self.statistics = statistics

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["session_id"] = self.session_id
        data["statistics"] = self.statistics.to_dict() if self.statistics else None
        return data


# ==================== Collaborator Errors ====================

class SemanticMatchError(ReconciliationError):
    code = "semantic_match_failed"


# ==================== Data Integrity Errors ====================

class DataIntegrityError(ReconciliationError):
    """Persistence boundary rejected a write. Retryable for the single transaction."""
    code = "data_integrity_violation"
    retryable = True


class DuplicateMatchError(DataIntegrityError):
    """A second non-rejected match for the same (session, transaction)."""
    code = "duplicate_match"


class LedgerEntryAlreadyClaimedError(DataIntegrityError):
    """The ledger entry is already claimed by another pending/confirmed match."""
    code = "ledger_entry_already_claimed"
