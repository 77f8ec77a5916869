"""
SQLAlchemy Repositories

Async SQLAlchemy implementation of every repository interface over the
recon_* tables. Each call runs in its own AsyncSession and commits, except
inside atomic(), where all calls share one session and one transaction.

Persistence invariants are enforced by the partial unique indexes on
recon_matches; IntegrityError is translated to the matching
DataIntegrityError subclass. Run locks are rows in recon_run_locks keyed by
account, so a second run for the same account is refused regardless of
period. A lock older than the TTL was left by a dead process and is taken
over.
"""

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.reconciliation_models import (
    AccountMappingDB,
    BankTransactionDB,
    ExceptionDB,
    LedgerEntryDB,
    MatchDB,
    MatchingRuleDB,
    ReconciliationAuditLogDB,
    ReconciliationSessionDB,
    RunLockDB,
)
from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchStatus, TransactionStatus
from reconciliation.errors import (
    AccountNotLinkedError,
    DataIntegrityError,
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
    RuleAction,
    RuleCondition,
    SessionStatistics,
    generate_id,
    utc_now,
)
from reconciliation.repositories.base import (
    CandidateStore,
    ReconciliationRepository,
    RuleRepository,
)

logger = logging.getLogger(__name__)

CLAIMING_STATUSES = (MatchStatus.PENDING, MatchStatus.CONFIRMED)
DEFAULT_RUN_LOCK_TTL_SECONDS = 3600

# unique indexes on recon_matches; SQLite reports the columns instead of the name
CLAIMED_ENTRY_MARKERS = ("uq_recon_matches_claimed_ledger_entry", "recon_matches.ledger_entry_id")
ACTIVE_MATCH_MARKERS = ("uq_recon_matches_active_transaction", "recon_matches.session_id")


# ==================== Row <-> record mapping ====================

def _match_integrity_error(match: Match, error: IntegrityError) -> DataIntegrityError:
    """Translate a unique-index violation on recon_matches by index."""
    message = str(error.orig)
    details = {"transaction_id": match.transaction_id, "ledger_entry_id": match.ledger_entry_id}
    if any(marker in message for marker in CLAIMED_ENTRY_MARKERS):
        return LedgerEntryAlreadyClaimedError(
            f"Ledger entry {match.ledger_entry_id} is already claimed", details=details
        )
    if any(marker in message for marker in ACTIVE_MATCH_MARKERS):
        return DuplicateMatchError(
            f"Transaction {match.transaction_id} already has an active match "
            f"in session {match.session_id}",
            details=details,
        )
    return DataIntegrityError(
        f"Match {match.id} violates a reconciliation invariant", details=details
    )


def _transaction_from_row(row: BankTransactionDB) -> BankTransaction:
    return BankTransaction(
        id=row.id,
        account_id=row.account_id,
        booking_date=row.booking_date,
        amount=Decimal(str(row.amount)),
        currency=row.currency,
        description=row.description or "",
        counterparty_name=row.counterparty_name,
        reference=row.reference,
        reconciliation_status=row.reconciliation_status,
    )


def _ledger_entry_from_row(row: LedgerEntryDB) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        ledger_account_id=row.ledger_account_id,
        entry_date=row.entry_date,
        amount=Decimal(str(row.amount)),
        description=row.description or "",
        reference=row.reference,
        account_code=row.account_code,
        reconciled=bool(row.reconciled),
    )


def _rule_from_row(row: MatchingRuleDB) -> MatchingRule:
    return MatchingRule(
        id=row.id,
        name=row.name,
        priority=row.priority,
        enabled=bool(row.enabled),
        account_id=row.account_id,
        conditions=[RuleCondition.from_dict(c) for c in (row.conditions or [])],
        action=RuleAction.from_dict(row.action),
        hit_count=row.hit_count or 0,
        last_hit_at=row.last_hit_at,
    )


def _session_from_row(row: ReconciliationSessionDB) -> ReconciliationSession:
    return ReconciliationSession(
        id=row.id,
        account_id=row.account_id,
        period_start=row.period_start,
        period_end=row.period_end,
        status=row.status,
        config=ReconciliationConfig.from_dict(row.config),
        started_at=row.started_at,
        completed_at=row.completed_at,
        statistics=SessionStatistics.from_dict(row.statistics),
        failure_reason=row.failure_reason,
        created_by=row.created_by,
    )


def _match_from_row(row: MatchDB) -> Match:
    return Match(
        id=row.id,
        session_id=row.session_id,
        transaction_id=row.transaction_id,
        ledger_entry_id=row.ledger_entry_id,
        match_type=row.match_type,
        confidence=row.confidence,
        criteria=dict(row.criteria or {}),
        status=row.status,
        rule_id=row.rule_id,
        created_at=row.created_at,
        confirmed_at=row.confirmed_at,
        confirmed_by=row.confirmed_by,
        rejected_at=row.rejected_at,
        rejected_by=row.rejected_by,
        rejection_reason=row.rejection_reason,
    )


def _exception_from_row(row: ExceptionDB) -> ExceptionRecord:
    return ExceptionRecord(
        id=row.id,
        session_id=row.session_id,
        transaction_id=row.transaction_id,
        exception_type=row.exception_type,
        details=dict(row.details or {}),
        candidate_ids=list(row.candidate_ids or []),
        resolution=row.resolution,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
        resolution_note=row.resolution_note,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _audit_from_row(row: ReconciliationAuditLogDB) -> Dict[str, Any]:
    return {
        "id": row.id,
        "event": row.event,
        "account_id": row.account_id,
        "session_id": row.session_id,
        "match_id": row.match_id,
        "actor": row.actor,
        "details": row.details,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
    }


class SqlReconciliationStore(CandidateStore, RuleRepository, ReconciliationRepository):
    """
    SQLAlchemy-backed store implementing every repository interface.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        run_lock_ttl_seconds: int = DEFAULT_RUN_LOCK_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self._run_lock_ttl = timedelta(seconds=run_lock_ttl_seconds)
        self._current: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"recon_sql_session_{id(self)}", default=None
        )

    @asynccontextmanager
    async def _session(self):
        current = self._current.get()
        if current is not None:
            yield current
            return

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ==================== Seeding ====================

    async def add_transaction(self, transaction: BankTransaction) -> BankTransaction:
        async with self._session() as db:
            db.add(BankTransactionDB(
                id=transaction.id,
                account_id=transaction.account_id,
                booking_date=transaction.booking_date,
                amount=transaction.amount,
                currency=transaction.currency,
                description=transaction.description,
                counterparty_name=transaction.counterparty_name,
                reference=transaction.reference,
                reconciliation_status=transaction.reconciliation_status,
            ))
        return transaction

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._session() as db:
            db.add(LedgerEntryDB(
                id=entry.id,
                ledger_account_id=entry.ledger_account_id,
                entry_date=entry.entry_date,
                amount=entry.amount,
                description=entry.description,
                reference=entry.reference,
                account_code=entry.account_code,
                reconciled=entry.reconciled,
            ))
        return entry

    async def link_account(self, mapping: AccountMapping) -> None:
        async with self._session() as db:
            await db.merge(AccountMappingDB(
                bank_account_id=mapping.bank_account_id,
                ledger_account_id=mapping.ledger_account_id,
            ))

    # ==================== CandidateStore ====================

    async def get_linked_ledger_account(self, account_id: str) -> Optional[str]:
        async with self._session() as db:
            row = await db.get(AccountMappingDB, account_id)
            return row.ledger_account_id if row else None

    async def list_unmatched_transactions(
        self, account_id: str, start: date, end: date
    ) -> List[BankTransaction]:
        async with self._session() as db:
            result = await db.execute(
                select(BankTransactionDB)
                .where(
                    BankTransactionDB.account_id == account_id,
                    BankTransactionDB.reconciliation_status == TransactionStatus.UNMATCHED,
                    BankTransactionDB.booking_date >= start,
                    BankTransactionDB.booking_date <= end,
                )
                .order_by(BankTransactionDB.booking_date, BankTransactionDB.id)
            )
            return [_transaction_from_row(r) for r in result.scalars().all()]

    async def list_unreconciled_ledger_entries(
        self, account_id: str, start: date, end: date
    ) -> List[LedgerEntry]:
        ledger_account_id = await self.get_linked_ledger_account(account_id)
        if ledger_account_id is None:
            raise AccountNotLinkedError(
                f"Bank account {account_id} has no linked ledger account",
                details={"account_id": account_id}
            )

        async with self._session() as db:
            result = await db.execute(
                select(LedgerEntryDB)
                .where(
                    LedgerEntryDB.ledger_account_id == ledger_account_id,
                    LedgerEntryDB.reconciled.is_(False),
                    LedgerEntryDB.entry_date >= start,
                    LedgerEntryDB.entry_date <= end,
                )
                .order_by(LedgerEntryDB.entry_date, LedgerEntryDB.id)
            )
            return [_ledger_entry_from_row(r) for r in result.scalars().all()]

    async def get_transaction(self, transaction_id: str) -> Optional[BankTransaction]:
        async with self._session() as db:
            row = await db.get(BankTransactionDB, transaction_id)
            return _transaction_from_row(row) if row else None

    async def get_ledger_entry(self, ledger_entry_id: str) -> Optional[LedgerEntry]:
        async with self._session() as db:
            row = await db.get(LedgerEntryDB, ledger_entry_id)
            return _ledger_entry_from_row(row) if row else None

    # ==================== RuleRepository ====================

    async def list_enabled_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        async with self._session() as db:
            query = select(MatchingRuleDB).where(MatchingRuleDB.enabled.is_(True))
            if account_id is None:
                query = query.where(MatchingRuleDB.account_id.is_(None))
            else:
                query = query.where(
                    (MatchingRuleDB.account_id.is_(None)) | (MatchingRuleDB.account_id == account_id)
                )
            result = await db.execute(
                query.order_by(MatchingRuleDB.priority, MatchingRuleDB.name, MatchingRuleDB.id)
            )
            return [_rule_from_row(r) for r in result.scalars().all()]

    async def list_rules(self, account_id: Optional[str] = None) -> List[MatchingRule]:
        async with self._session() as db:
            query = select(MatchingRuleDB)
            if account_id is not None:
                query = query.where(
                    (MatchingRuleDB.account_id.is_(None)) | (MatchingRuleDB.account_id == account_id)
                )
            result = await db.execute(
                query.order_by(MatchingRuleDB.priority, MatchingRuleDB.name, MatchingRuleDB.id)
            )
            return [_rule_from_row(r) for r in result.scalars().all()]

    async def get_rule(self, rule_id: str) -> Optional[MatchingRule]:
        async with self._session() as db:
            row = await db.get(MatchingRuleDB, rule_id)
            return _rule_from_row(row) if row else None

    async def save_rule(self, rule: MatchingRule) -> MatchingRule:
        async with self._session() as db:
            await db.merge(MatchingRuleDB(
                id=rule.id,
                account_id=rule.account_id,
                name=rule.name,
                priority=rule.priority,
                enabled=rule.enabled,
                conditions=[c.to_dict() for c in rule.conditions],
                action=rule.action.to_dict(),
                hit_count=rule.hit_count,
                last_hit_at=rule.last_hit_at,
            ))
        return rule

    async def record_rule_hit(self, rule_id: str, at: datetime) -> None:
        async with self._session() as db:
            await db.execute(
                update(MatchingRuleDB)
                .where(MatchingRuleDB.id == rule_id)
                .values(hit_count=MatchingRuleDB.hit_count + 1, last_hit_at=at)
            )

    # ==================== Units of work ====================

    @asynccontextmanager
    async def atomic(self):
        if self._current.get() is not None:
            yield
            return

        async with self._session_factory() as session:
            token = self._current.set(session)
            try:
                async with session.begin():
                    yield
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def run_lock(self, account_id: str, start: date, end: date):
        owner_id = generate_id()
        now = utc_now()
        try:
            async with self._session_factory() as db:
                stale = await db.execute(
                    delete(RunLockDB).where(
                        RunLockDB.account_id == account_id,
                        RunLockDB.acquired_at < now - self._run_lock_ttl,
                    )
                )
                if stale.rowcount:
                    logger.warning(
                        f"Took over stale run lock for account {account_id} "
                        f"(older than {self._run_lock_ttl})"
                    )
                db.add(RunLockDB(
                    account_id=account_id,
                    period_start=start,
                    period_end=end,
                    acquired_at=now,
                    owner_id=owner_id,
                ))
                await db.commit()
        except IntegrityError as e:
            raise SessionLockedError(
                f"A reconciliation run for account {account_id} is already in progress",
                details={"account_id": account_id}
            ) from e

        try:
            yield
        finally:
            async with self._session_factory() as db:
                await db.execute(delete(RunLockDB).where(
                    RunLockDB.account_id == account_id,
                    RunLockDB.owner_id == owner_id,
                ))
                await db.commit()

    # ==================== Sessions ====================

    async def save_session(self, session: ReconciliationSession) -> ReconciliationSession:
        async with self._session() as db:
            await db.merge(ReconciliationSessionDB(
                id=session.id,
                account_id=session.account_id,
                period_start=session.period_start,
                period_end=session.period_end,
                status=session.status,
                config=session.config.to_dict(),
                statistics=session.statistics.to_dict() if session.statistics else None,
                failure_reason=session.failure_reason,
                created_by=session.created_by,
                started_at=session.started_at,
                completed_at=session.completed_at,
            ))
        return session

    async def get_session(self, session_id: str) -> Optional[ReconciliationSession]:
        async with self._session() as db:
            row = await db.get(ReconciliationSessionDB, session_id)
            return _session_from_row(row) if row else None

    async def list_sessions(self, account_id: Optional[str] = None) -> List[ReconciliationSession]:
        async with self._session() as db:
            query = select(ReconciliationSessionDB)
            if account_id is not None:
                query = query.where(ReconciliationSessionDB.account_id == account_id)
            result = await db.execute(query.order_by(ReconciliationSessionDB.started_at.desc()))
            return [_session_from_row(r) for r in result.scalars().all()]

    # ==================== Matches ====================

    async def _check_match_invariants(self, db: AsyncSession, match: Match) -> None:
        if match.status != MatchStatus.REJECTED:
            result = await db.execute(
                select(MatchDB.id).where(
                    MatchDB.session_id == match.session_id,
                    MatchDB.transaction_id == match.transaction_id,
                    MatchDB.status != MatchStatus.REJECTED,
                    MatchDB.id != match.id,
                )
            )
            existing = result.scalars().first()
            if existing:
                raise DuplicateMatchError(
                    f"Transaction {match.transaction_id} already has an active match "
                    f"in session {match.session_id}",
                    details={"existing_match_id": existing, "transaction_id": match.transaction_id}
                )

        if match.status.claims_ledger_entry and match.ledger_entry_id is not None:
            result = await db.execute(
                select(MatchDB.id).where(
                    MatchDB.ledger_entry_id == match.ledger_entry_id,
                    MatchDB.status.in_(CLAIMING_STATUSES),
                    MatchDB.id != match.id,
                )
            )
            existing = result.scalars().first()
            if existing:
                raise LedgerEntryAlreadyClaimedError(
                    f"Ledger entry {match.ledger_entry_id} is already claimed",
                    details={"existing_match_id": existing, "ledger_entry_id": match.ledger_entry_id}
                )

    async def save_match(self, match: Match) -> Match:
        try:
            async with self._session() as db:
                await self._check_match_invariants(db, match)
                await db.merge(MatchDB(
                    id=match.id,
                    session_id=match.session_id,
                    transaction_id=match.transaction_id,
                    ledger_entry_id=match.ledger_entry_id,
                    match_type=match.match_type,
                    confidence=match.confidence,
                    criteria=match.criteria,
                    status=match.status,
                    rule_id=match.rule_id,
                    created_at=match.created_at,
                    confirmed_at=match.confirmed_at,
                    confirmed_by=match.confirmed_by,
                    rejected_at=match.rejected_at,
                    rejected_by=match.rejected_by,
                    rejection_reason=match.rejection_reason,
                ))
                await db.flush()
        except IntegrityError as e:
            # concurrent writer slipped past the pre-check; the index decides
            raise _match_integrity_error(match, e) from e
        return match

    async def get_match(self, match_id: str) -> Optional[Match]:
        async with self._session() as db:
            row = await db.get(MatchDB, match_id)
            return _match_from_row(row) if row else None

    async def list_matches(
        self, session_id: str, status: Optional[MatchStatus] = None
    ) -> List[Match]:
        async with self._session() as db:
            query = select(MatchDB).where(MatchDB.session_id == session_id)
            if status is not None:
                query = query.where(MatchDB.status == status)
            result = await db.execute(query.order_by(MatchDB.created_at, MatchDB.id))
            return [_match_from_row(r) for r in result.scalars().all()]

    async def list_matches_for_transaction(self, transaction_id: str) -> List[Match]:
        async with self._session() as db:
            result = await db.execute(
                select(MatchDB)
                .where(MatchDB.transaction_id == transaction_id)
                .order_by(MatchDB.created_at, MatchDB.id)
            )
            return [_match_from_row(r) for r in result.scalars().all()]

    async def find_claiming_match(self, ledger_entry_id: str) -> Optional[Match]:
        async with self._session() as db:
            result = await db.execute(
                select(MatchDB).where(
                    MatchDB.ledger_entry_id == ledger_entry_id,
                    MatchDB.status.in_(CLAIMING_STATUSES),
                )
            )
            row = result.scalars().first()
            return _match_from_row(row) if row else None

    async def claimed_ledger_entry_ids(self, ledger_entry_ids: Iterable[str]) -> Set[str]:
        wanted = list(ledger_entry_ids)
        if not wanted:
            return set()
        async with self._session() as db:
            result = await db.execute(
                select(MatchDB.ledger_entry_id).where(
                    MatchDB.ledger_entry_id.in_(wanted),
                    MatchDB.status.in_(CLAIMING_STATUSES),
                )
            )
            return set(result.scalars().all())

    # ==================== Exceptions ====================

    async def save_exception(self, exception: ExceptionRecord) -> ExceptionRecord:
        async with self._session() as db:
            await db.merge(ExceptionDB(
                id=exception.id,
                session_id=exception.session_id,
                transaction_id=exception.transaction_id,
                exception_type=exception.exception_type,
                details=exception.details,
                candidate_ids=list(exception.candidate_ids),
                resolution=exception.resolution,
                resolved_at=exception.resolved_at,
                resolved_by=exception.resolved_by,
                resolution_note=exception.resolution_note,
                created_at=exception.created_at,
                updated_at=exception.updated_at,
            ))
        return exception

    async def get_exception(self, exception_id: str) -> Optional[ExceptionRecord]:
        async with self._session() as db:
            row = await db.get(ExceptionDB, exception_id)
            return _exception_from_row(row) if row else None

    async def list_exceptions(
        self, session_id: str, unresolved_only: bool = False
    ) -> List[ExceptionRecord]:
        async with self._session() as db:
            query = select(ExceptionDB).where(ExceptionDB.session_id == session_id)
            if unresolved_only:
                query = query.where(ExceptionDB.resolution.is_(None))
            result = await db.execute(query.order_by(ExceptionDB.created_at, ExceptionDB.id))
            return [_exception_from_row(r) for r in result.scalars().all()]

    async def list_exceptions_for_transaction(self, transaction_id: str) -> List[ExceptionRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(ExceptionDB)
                .where(ExceptionDB.transaction_id == transaction_id)
                .order_by(ExceptionDB.created_at, ExceptionDB.id)
            )
            return [_exception_from_row(r) for r in result.scalars().all()]

    # ==================== Write-backs ====================

    async def update_transaction_status(
        self, transaction_id: str, status: TransactionStatus
    ) -> None:
        async with self._session() as db:
            result = await db.execute(
                update(BankTransactionDB)
                .where(BankTransactionDB.id == transaction_id)
                .values(reconciliation_status=status, updated_at=utc_now())
            )
            if result.rowcount == 0:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

    async def update_ledger_entry_reconciled(self, ledger_entry_id: str, reconciled: bool) -> None:
        async with self._session() as db:
            result = await db.execute(
                update(LedgerEntryDB)
                .where(LedgerEntryDB.id == ledger_entry_id)
                .values(reconciled=reconciled, updated_at=utc_now())
            )
            if result.rowcount == 0:
                raise LedgerEntryNotFoundError(f"Ledger entry {ledger_entry_id} not found")

    # ==================== Audit ====================

    async def save_audit_entry(self, entry: Dict[str, Any]) -> None:
        async with self._session() as db:
            db.add(ReconciliationAuditLogDB(
                event=entry["event"],
                account_id=entry.get("account_id"),
                session_id=entry.get("session_id"),
                match_id=entry.get("match_id"),
                actor=entry.get("actor") or "system",
                details=entry.get("details"),
            ))

    async def list_audit_entries(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self._session() as db:
            query = select(ReconciliationAuditLogDB)
            if session_id is not None:
                query = query.where(ReconciliationAuditLogDB.session_id == session_id)
            result = await db.execute(query.order_by(ReconciliationAuditLogDB.timestamp))
            return [_audit_from_row(r) for r in result.scalars().all()]
