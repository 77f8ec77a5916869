"""
Reconciliation Session Manager

Owns the session lifecycle:
- start_session: validate period, account link and config, persist IN_PROGRESS
- run_pipeline: load candidates once, run the matching pipeline, record statistics
- complete_session / cancel_session: one-way terminal transitions

Reruns are idempotent: transactions that already hold a non-rejected match
in the session, or whose exception was resolved, are skipped. Transactions
with an unresolved exception are retried and their exception is updated
rather than duplicated.

Cancellation and active-run tracking are in-process; cross-process
exclusion comes from repository.run_lock.
"""

import logging
import time
from datetime import date, timedelta
from typing import Iterable, List, Optional, Set, Tuple

from reconciliation.audit import ReconciliationAuditEvent, record_reconciliation_event
from reconciliation.candidate_pool import CandidatePool
from reconciliation.classifier import ExceptionClassifier
from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchStatus, SessionStatus
from reconciliation.errors import (
    AccountNotLinkedError,
    CandidateStoreUnavailableError,
    InvalidPeriodError,
    ReconciliationError,
    SessionFailedError,
    SessionLockedError,
    SessionNotFoundError,
    SessionNotInProgressError,
)
from reconciliation.models import (
    BankTransaction,
    LedgerEntry,
    ReconciliationSession,
    SessionStatistics,
    utc_now,
)
from reconciliation.pipeline import MatchingPipeline, PipelineRunResult
from reconciliation.repositories.base import (
    CandidateStore,
    ReconciliationRepository,
    RuleRepository,
)
from reconciliation.semantic.client import SemanticMatcher
from reconciliation.statistics import compute_statistics
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Service for running reconciliation sessions.
    """

    def __init__(
        self,
        candidate_store: CandidateStore,
        rule_repository: RuleRepository,
        repository: ReconciliationRepository,
        semantic_matcher: Optional[SemanticMatcher] = None,
        default_config: Optional[ReconciliationConfig] = None,
        classifier: Optional[ExceptionClassifier] = None,
    ):
        self.candidate_store = candidate_store
        self.rule_repository = rule_repository
        self.repository = repository
        self.default_config = default_config or ReconciliationConfig()
        self.pipeline = MatchingPipeline(
            repository,
            rule_repository,
            semantic_matcher=semantic_matcher,
            classifier=classifier,
        )
        self._active_runs: Set[str] = set()
        self._cancel_requested: Set[str] = set()

    # ==================== Queries ====================

    async def get_session(self, session_id: str) -> ReconciliationSession:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"Reconciliation session {session_id} not found",
                details={"session_id": session_id}
            )
        return session

    async def list_sessions(self, account_id: Optional[str] = None) -> List[ReconciliationSession]:
        return await self.repository.list_sessions(account_id)

    async def get_statistics(self, session_id: str) -> SessionStatistics:
        """
        Statistics of a session. Terminal sessions return the statistics
        frozen when they ended; in-progress sessions are recomputed so manual
        resolutions show up immediately.
        """
        session = await self.get_session(session_id)
        if session.is_terminal and session.statistics is not None:
            return session.statistics
        return await self._current_statistics(session)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active_runs

    # ==================== Lifecycle ====================

    async def start_session(
        self,
        account_id: str,
        period_start: date,
        period_end: date,
        config: Optional[ReconciliationConfig] = None,
        actor: str = "system",
    ) -> ReconciliationSession:
        """
        Open a reconciliation session.

        Raises:
            InvalidPeriodError: period_start is after period_end
            InvalidConfigurationError: a threshold or tolerance is out of range
            AccountNotLinkedError: the bank account has no ledger mapping
        """
        if period_start > period_end:
            raise InvalidPeriodError(
                f"Period start {period_start} is after period end {period_end}",
                details={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()}
            )

        config = (config or self.default_config).validate()

        try:
            ledger_account_id = await self.candidate_store.get_linked_ledger_account(account_id)
        except ReconciliationError:
            raise
        except Exception as e:
            raise CandidateStoreUnavailableError(
                f"Candidate store unavailable: {e}",
                details={"account_id": account_id}
            ) from e

        if not ledger_account_id:
            raise AccountNotLinkedError(
                f"Bank account {account_id} has no linked ledger account",
                details={"account_id": account_id}
            )

        session = ReconciliationSession(
            account_id=account_id,
            period_start=period_start,
            period_end=period_end,
            config=config,
            created_by=actor,
        )
        await self.repository.save_session(session)

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.SESSION_STARTED,
            account_id,
            {
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "ledger_account_id": ledger_account_id,
                "config": config.to_dict(),
            },
            session_id=session.id,
            actor=actor,
        )
        return session

    async def run_pipeline(self, session_id: str) -> PipelineRunResult:
        """
        Run the matching pipeline for an IN_PROGRESS session.

        Raises:
            SessionNotInProgressError: session is terminal
            SessionLockedError: a run for the same account/period is active
            SessionFailedError: the candidate store (or persistence) failed;
                the session is now FAILED
        """
        session = await self.get_session(session_id)
        self._require_in_progress(session)

        if session_id in self._active_runs:
            raise SessionLockedError(
                f"Session {session_id} is already running",
                details={"session_id": session_id}
            )

        async with self.repository.run_lock(session.account_id, session.period_start, session.period_end):
            self._active_runs.add(session_id)
            try:
                return await self._run(session)
            finally:
                self._active_runs.discard(session_id)
                self._cancel_requested.discard(session_id)

    async def complete_session(self, session_id: str, actor: str = "system") -> ReconciliationSession:
        """Move the session to COMPLETED and freeze its statistics."""
        session = await self.get_session(session_id)
        self._require_in_progress(session)

        if session_id in self._active_runs:
            raise SessionLockedError(
                f"Session {session_id} cannot be completed while a run is active",
                details={"session_id": session_id}
            )

        statistics = await self._current_statistics(session)

        session.status = SessionStatus.COMPLETED
        session.completed_at = utc_now()
        session.statistics = statistics
        await self.repository.save_session(session)

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.SESSION_COMPLETED,
            session.account_id,
            {"statistics": statistics.to_dict()},
            session_id=session.id,
            actor=actor,
        )
        return session

    async def cancel_session(self, session_id: str, actor: str = "system") -> ReconciliationSession:
        """
        Cancel a session. An active run stops before its next transaction
        and moves the session to CANCELLED itself; nothing is rolled back.
        """
        session = await self.get_session(session_id)
        self._require_in_progress(session)

        if session_id in self._active_runs:
            self._cancel_requested.add(session_id)
            logger.info(f"Cancellation requested for running session {session_id}")
            return session

        await self._mark_cancelled(session, actor)
        return session

    # ==================== Internals ====================

    @staticmethod
    def _require_in_progress(session: ReconciliationSession) -> None:
        if session.is_terminal:
            raise SessionNotInProgressError(
                f"Session {session.id} is {session.status.value}",
                details={"session_id": session.id, "status": session.status.value}
            )

    async def _mark_cancelled(self, session: ReconciliationSession, actor: str) -> None:
        session.status = SessionStatus.CANCELLED
        session.completed_at = utc_now()
        await self.repository.save_session(session)

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.SESSION_CANCELLED,
            session.account_id,
            {},
            session_id=session.id,
            actor=actor,
        )

    async def _load_candidates(
        self, session: ReconciliationSession
    ) -> Tuple[List[BankTransaction], List[LedgerEntry]]:
        """
        Pull transactions for the period and ledger entries for the period
        widened by the date tolerance.
        """
        window = timedelta(days=session.config.date_tolerance_days)
        try:
            transactions = await self.candidate_store.list_unmatched_transactions(
                session.account_id, session.period_start, session.period_end
            )
            entries = await self.candidate_store.list_unreconciled_ledger_entries(
                session.account_id, session.period_start - window, session.period_end + window
            )
        except ReconciliationError:
            raise
        except Exception as e:
            raise CandidateStoreUnavailableError(
                f"Candidate store unavailable: {e}",
                details={"session_id": session.id, "account_id": session.account_id}
            ) from e
        return transactions, entries

    async def _compute_statistics(
        self,
        session: ReconciliationSession,
        transaction_ids: Iterable[str],
        duration_ms: int,
    ) -> SessionStatistics:
        matches = await self.repository.list_matches(session.id)
        exceptions = await self.repository.list_exceptions(session.id)

        in_scope = set(transaction_ids)
        in_scope.update(m.transaction_id for m in matches)
        in_scope.update(e.transaction_id for e in exceptions)

        return compute_statistics(len(in_scope), matches, exceptions, duration_ms)

    async def _current_statistics(self, session: ReconciliationSession) -> SessionStatistics:
        """
        Recompute statistics outside a run. The last run's transaction count
        is kept as a floor, since transactions it saw may since have been
        matched elsewhere.
        """
        previous_total = session.statistics.total_transactions if session.statistics else 0
        duration = session.statistics.processing_duration_ms if session.statistics else 0
        matches = await self.repository.list_matches(session.id)
        exceptions = await self.repository.list_exceptions(session.id)

        in_scope = {m.transaction_id for m in matches}
        in_scope.update(e.transaction_id for e in exceptions)

        return compute_statistics(
            max(len(in_scope), previous_total), matches, exceptions, duration
        )

    async def _run(self, session: ReconciliationSession) -> PipelineRunResult:
        started = time.monotonic()

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.RUN_STARTED,
            session.account_id,
            {"config": session.config.to_dict()},
            session_id=session.id,
        )

        transactions: List[BankTransaction] = []
        try:
            transactions, entries = await self._load_candidates(session)

            existing_matches = await self.repository.list_matches(session.id)
            exceptions = await self.repository.list_exceptions(session.id)

            placed = {
                m.transaction_id for m in existing_matches
                if m.status != MatchStatus.REJECTED
            }
            resolved = {e.transaction_id for e in exceptions if e.is_resolved}
            open_exceptions = {e.transaction_id: e for e in exceptions if not e.is_resolved}

            to_process = [
                t for t in transactions
                if t.id not in placed and t.id not in resolved
            ]

            claimed = await self.repository.claimed_ledger_entry_ids(e.id for e in entries)
            pool = CandidatePool(e for e in entries if e.id not in claimed)

            rules = await self.rule_repository.list_enabled_rules(session.account_id)

            result = await self.pipeline.run(
                session,
                to_process,
                pool,
                rules,
                open_exceptions=open_exceptions,
                should_cancel=lambda: session.id in self._cancel_requested,
            )
            result.skipped = len(transactions) - len(to_process)

        except Exception as e:
            failure = await self._fail(session, e, [t.id for t in transactions], started)
            raise failure from e

        duration_ms = int((time.monotonic() - started) * 1000)
        statistics = await self._compute_statistics(
            session, [t.id for t in transactions], duration_ms
        )
        session.statistics = statistics
        result.statistics = statistics
        result.duration_ms = duration_ms

        if result.cancelled or session.id in self._cancel_requested:
            result.cancelled = True
            await self._mark_cancelled(session, "system")
        else:
            await self.repository.save_session(session)

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.RUN_COMPLETED,
            session.account_id,
            result.to_dict(),
            session_id=session.id,
        )
        logger.info(
            f"Session {session.id} run finished: {result.matched} matched, "
            f"{result.exceptions_created + result.exceptions_updated} exceptions, "
            f"{result.skipped} skipped, {result.failed} failed in {duration_ms}ms"
        )
        return result

    async def _fail(
        self,
        session: ReconciliationSession,
        error: Exception,
        transaction_ids: List[str],
        started: float,
    ) -> SessionFailedError:
        """Move the session to FAILED and build the SessionFailedError to raise."""
        duration_ms = int((time.monotonic() - started) * 1000)
        reason = error.message if isinstance(error, ReconciliationError) else str(error)

        try:
            statistics = await self._compute_statistics(session, transaction_ids, duration_ms)
        except Exception as stats_error:
            logger.error(f"Could not compute statistics for failed session {session.id}: {stats_error}")
            statistics = session.statistics

        session.status = SessionStatus.FAILED
        session.failure_reason = reason
        session.completed_at = utc_now()
        session.statistics = statistics

        try:
            await self.repository.save_session(session)
        except Exception as save_error:
            logger.error(f"Could not persist FAILED status for session {session.id}: {save_error}")

        logger.error(f"Session {session.id} failed: {reason}", exc_info=error)
        capture_exception(
            error,
            tags={"session_id": session.id, "account_id": session.account_id},
        )
        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.SESSION_FAILED,
            session.account_id,
            {"reason": reason, "error": type(error).__name__},
            session_id=session.id,
        )

        return SessionFailedError(
            f"Reconciliation session {session.id} failed: {reason}",
            session_id=session.id,
            statistics=statistics,
            details={"cause": getattr(error, "code", type(error).__name__)},
        )
