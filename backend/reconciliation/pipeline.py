"""
Matching Pipeline

Runs every in-scope transaction of a session, oldest booking date first,
through the strategy tiers (rule -> exact -> fuzzy -> semantic) against a
shared, shrinking candidate pool. The first accepted candidate becomes a
Match; a transaction no tier places is handed to the ExceptionClassifier.

Per transaction:
1. Strategies see a snapshot of the unclaimed pool
2. The accepted ledger entry is claimed (removed from the pool)
3. Match save and CONFIRMED write-backs commit in one atomic unit
4. Data integrity failures are counted and the run continues
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from reconciliation.audit import ReconciliationAuditEvent, record_reconciliation_event
from reconciliation.candidate_pool import CandidatePool
from reconciliation.classifier import ExceptionClassifier
from reconciliation.enums import (
    ExceptionResolution,
    MatchStatus,
    TransactionStatus,
)
from reconciliation.errors import DataIntegrityError, LedgerEntryAlreadyClaimedError
from reconciliation.models import (
    BankTransaction,
    ExceptionRecord,
    Match,
    MatchingRule,
    ReconciliationSession,
    SessionStatistics,
    utc_now,
)
from reconciliation.repositories.base import ReconciliationRepository, RuleRepository
from reconciliation.semantic.client import SemanticMatcher
from reconciliation.strategies import (
    ExactStrategy,
    FuzzyStrategy,
    MatchingStrategy,
    RuleStrategy,
    ScoredCandidate,
    SemanticStrategy,
)

logger = logging.getLogger(__name__)


@dataclass
class TransactionOutcome:
    """What happened to one transaction in a run."""
    transaction_id: str
    match: Optional[Match] = None
    exception: Optional[ExceptionRecord] = None
    error: Optional[str] = None


@dataclass
class PipelineRunResult:
    """
    Per-run counters plus the session statistics computed at the end of the run.
    """
    session_id: str
    processed: int = 0
    matched: int = 0
    auto_confirmed: int = 0
    exceptions_created: int = 0
    exceptions_updated: int = 0
    exceptions_resolved: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    duration_ms: int = 0
    statistics: Optional[SessionStatistics] = None
    outcomes: List[TransactionOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "processed": self.processed,
            "matched": self.matched,
            "auto_confirmed": self.auto_confirmed,
            "exceptions_created": self.exceptions_created,
            "exceptions_updated": self.exceptions_updated,
            "exceptions_resolved": self.exceptions_resolved,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
            "statistics": self.statistics.to_dict() if self.statistics else None,
        }


class MatchingPipeline:
    """
    Sequential matching over one session's transactions.
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        rule_repository: RuleRepository,
        semantic_matcher: Optional[SemanticMatcher] = None,
        classifier: Optional[ExceptionClassifier] = None,
    ):
        self.repository = repository
        self.rule_repository = rule_repository
        self.semantic_matcher = semantic_matcher
        self.classifier = classifier or ExceptionClassifier()

    def build_strategies(self, rules: List[MatchingRule]) -> List[MatchingStrategy]:
        """Strategy tiers in their fixed order."""
        return [
            RuleStrategy(rules),
            ExactStrategy(),
            FuzzyStrategy(),
            SemanticStrategy(self.semantic_matcher),
        ]

    async def run(
        self,
        session: ReconciliationSession,
        transactions: List[BankTransaction],
        pool: CandidatePool,
        rules: List[MatchingRule],
        open_exceptions: Optional[Dict[str, ExceptionRecord]] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> PipelineRunResult:
        """
        Process transactions against the pool.

        Args:
            session: the IN_PROGRESS session being run
            transactions: transactions to process (already filtered for reruns)
            pool: candidate pool for this run
            rules: enabled rules in scope for the session account
            open_exceptions: unresolved exceptions by transaction id; reused, never duplicated
            should_cancel: checked between transactions
        """
        started = time.monotonic()
        open_exceptions = open_exceptions or {}
        strategies = self.build_strategies(rules)
        result = PipelineRunResult(session_id=session.id)

        ordered = sorted(transactions, key=lambda t: (t.booking_date, t.id))
        logger.info(
            f"Pipeline run for session {session.id}: {len(ordered)} transactions, "
            f"{len(pool)} candidates, {len(rules)} rules"
        )

        for transaction in ordered:
            if should_cancel is not None and should_cancel():
                logger.info(f"Session {session.id} cancelled after {result.processed} transactions")
                result.cancelled = True
                break

            outcome = await self.process_transaction(
                session,
                transaction,
                pool,
                strategies,
                open_exceptions.get(transaction.id),
            )
            result.processed += 1
            result.outcomes.append(outcome)

            if outcome.error is not None:
                result.failed += 1
            elif outcome.match is not None:
                result.matched += 1
                if outcome.match.status == MatchStatus.CONFIRMED:
                    result.auto_confirmed += 1
                if transaction.id in open_exceptions:
                    result.exceptions_resolved += 1
            elif transaction.id in open_exceptions:
                result.exceptions_updated += 1
            else:
                result.exceptions_created += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Pipeline run for session {session.id} finished: {len(pool.claimed)} entries claimed, "
            f"{len(pool)} left in pool"
        )
        return result

    async def process_transaction(
        self,
        session: ReconciliationSession,
        transaction: BankTransaction,
        pool: CandidatePool,
        strategies: List[MatchingStrategy],
        open_exception: Optional[ExceptionRecord] = None,
    ) -> TransactionOutcome:
        candidates = pool.available()

        scored: Optional[ScoredCandidate] = None
        for strategy in strategies:
            scored = await strategy.find_match(transaction, candidates, session.config)
            if scored is not None:
                logger.debug(
                    f"Transaction {transaction.id}: {strategy.name} proposed "
                    f"{scored.ledger_entry_id} at {scored.confidence:.4f}"
                )
                break

        if scored is None:
            exception = await self._record_exception(session, transaction, pool, open_exception)
            return TransactionOutcome(transaction_id=transaction.id, exception=exception)

        try:
            match = await self._accept(session, transaction, pool, scored, open_exception)
        except LedgerEntryAlreadyClaimedError as e:
            # claimed outside this run since the pool was built
            await pool.discard(scored.ledger_entry_id)
            logger.warning(f"Transaction {transaction.id} not matched: {e.message}")
            return TransactionOutcome(transaction_id=transaction.id, error=e.code)
        except DataIntegrityError as e:
            logger.warning(f"Transaction {transaction.id} not matched: {e.message}")
            return TransactionOutcome(transaction_id=transaction.id, error=e.code)

        return TransactionOutcome(transaction_id=transaction.id, match=match)

    async def _accept(
        self,
        session: ReconciliationSession,
        transaction: BankTransaction,
        pool: CandidatePool,
        scored: ScoredCandidate,
        open_exception: Optional[ExceptionRecord],
    ) -> Match:
        entry = await pool.claim(scored.ledger_entry_id, transaction.id)

        now = utc_now()
        confirmed = session.config.should_auto_confirm(scored.match_type, scored.confidence)
        match = Match(
            session_id=session.id,
            transaction_id=transaction.id,
            ledger_entry_id=scored.ledger_entry_id,
            match_type=scored.match_type,
            confidence=scored.confidence,
            criteria=scored.criteria,
            status=MatchStatus.CONFIRMED if confirmed else MatchStatus.PENDING,
            rule_id=scored.rule_id,
            created_at=now,
            confirmed_at=now if confirmed else None,
            confirmed_by="system" if confirmed else None,
        )

        try:
            async with self.repository.atomic():
                await self.repository.save_match(match)
                if confirmed:
                    await self.repository.update_transaction_status(
                        transaction.id, TransactionStatus.MATCHED
                    )
                    await self.repository.update_ledger_entry_reconciled(scored.ledger_entry_id, True)
                if open_exception is not None:
                    await self.repository.save_exception(replace(
                        open_exception,
                        resolution=ExceptionResolution.MATCHED,
                        resolved_at=now,
                        resolved_by="system",
                        resolution_note=f"Matched by {scored.match_type.value} on rerun",
                        updated_at=now,
                    ))
        except LedgerEntryAlreadyClaimedError:
            raise
        except DataIntegrityError:
            # nothing persisted holds the entry
            await pool.release(entry)
            raise

        if scored.rule_id is not None:
            await self.rule_repository.record_rule_hit(scored.rule_id, now)
            await record_reconciliation_event(
                self.repository,
                ReconciliationAuditEvent.RULE_HIT,
                session.account_id,
                {"rule_id": scored.rule_id, "transaction_id": transaction.id},
                session_id=session.id,
                match_id=match.id,
            )

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.MATCH_CREATED,
            session.account_id,
            {
                "transaction_id": transaction.id,
                "ledger_entry_id": match.ledger_entry_id,
                "match_type": match.match_type.value,
                "confidence": match.confidence,
                "status": match.status.value,
            },
            session_id=session.id,
            match_id=match.id,
        )
        if open_exception is not None:
            await record_reconciliation_event(
                self.repository,
                ReconciliationAuditEvent.EXCEPTION_RESOLVED,
                session.account_id,
                {
                    "exception_id": open_exception.id,
                    "transaction_id": transaction.id,
                    "resolution": ExceptionResolution.MATCHED.value,
                },
                session_id=session.id,
                match_id=match.id,
            )

        return match

    async def _record_exception(
        self,
        session: ReconciliationSession,
        transaction: BankTransaction,
        pool: CandidatePool,
        open_exception: Optional[ExceptionRecord],
    ) -> ExceptionRecord:
        classification = self.classifier.classify(transaction, pool.available())

        if open_exception is not None:
            exception = replace(
                open_exception,
                exception_type=classification.exception_type,
                details=classification.details,
                candidate_ids=classification.candidate_ids,
                updated_at=utc_now(),
            )
            event = ReconciliationAuditEvent.EXCEPTION_UPDATED
        else:
            exception = ExceptionRecord(
                session_id=session.id,
                transaction_id=transaction.id,
                exception_type=classification.exception_type,
                details=classification.details,
                candidate_ids=classification.candidate_ids,
            )
            event = ReconciliationAuditEvent.EXCEPTION_CREATED

        await self.repository.save_exception(exception)
        await record_reconciliation_event(
            self.repository,
            event,
            session.account_id,
            {
                "exception_id": exception.id,
                "transaction_id": transaction.id,
                "exception_type": exception.exception_type.value,
            },
            session_id=session.id,
        )
        return exception
