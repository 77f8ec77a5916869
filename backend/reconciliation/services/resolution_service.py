"""
Manual Resolution Service

Review-queue operations on top of pipeline output:
- confirm_match: confirm a pending match, or manually pair a transaction
  with a ledger entry
- reject_match: reject a pending/confirmed match and release its ledger entry
- exclude_transaction: take a transaction out of the session
- resolve_exception: close an exception (matched, excluded, created entry, ignored)

All operations keep at most one non-rejected match per (session,
transaction) and run their writes in a single repository.atomic() unit.
Sessions must be IN_PROGRESS to be edited.
"""

import logging
from typing import List, Optional

from reconciliation.audit import ReconciliationAuditEvent, record_reconciliation_event
from reconciliation.enums import (
    ExceptionResolution,
    MatchStatus,
    MatchType,
    TransactionStatus,
)
from reconciliation.errors import (
    DuplicateMatchError,
    ExceptionAlreadyResolvedError,
    ExceptionNotFoundError,
    InvalidMatchStateError,
    InvalidResolutionError,
    LedgerEntryAlreadyClaimedError,
    LedgerEntryNotFoundError,
    MatchNotFoundError,
    SessionNotFoundError,
    SessionNotInProgressError,
    TransactionNotFoundError,
)
from reconciliation.models import (
    BankTransaction,
    ExceptionRecord,
    LedgerEntry,
    Match,
    ReconciliationSession,
    utc_now,
)
from reconciliation.repositories.base import CandidateStore, ReconciliationRepository
from reconciliation.strategies.base import amount_delta, days_between, reference_matches

logger = logging.getLogger(__name__)


class ResolutionService:
    """
    Service for manually resolving reconciliation results.
    """

    def __init__(self, candidate_store: CandidateStore, repository: ReconciliationRepository):
        self.candidate_store = candidate_store
        self.repository = repository

    # ==================== Public operations ====================

    async def confirm_match(
        self,
        transaction_id: str,
        ledger_entry_id: str,
        actor: str,
        session_id: Optional[str] = None,
    ) -> Match:
        """
        Confirm that a transaction corresponds to a ledger entry.

        A PENDING match for the same entry is confirmed. A PENDING match for a
        different entry (or an exclusion) is rejected and replaced by a MANUAL
        confirmed match.

        Raises:
            DuplicateMatchError: the transaction is already confirmed against another entry
            LedgerEntryAlreadyClaimedError: the entry is held by another match
        """
        return await self._confirm(
            transaction_id,
            ledger_entry_id,
            actor,
            session_id=session_id,
            exception_resolution=ExceptionResolution.MATCHED,
        )

    async def reject_match(self, match_id: str, actor: str, reason: Optional[str] = None) -> Match:
        """
        Reject a PENDING or CONFIRMED match. Rejecting a confirmed match
        clears the transaction and ledger entry reconciliation flags.
        """
        match = await self.repository.get_match(match_id)
        if match is None:
            raise MatchNotFoundError(f"Match {match_id} not found", details={"match_id": match_id})

        if not match.status.claims_ledger_entry:
            raise InvalidMatchStateError(
                f"Match {match_id} is {match.status.value} and cannot be rejected",
                details={"match_id": match_id, "status": match.status.value}
            )

        session = await self._require_session(match.session_id)
        was_confirmed = match.status == MatchStatus.CONFIRMED
        now = utc_now()

        reopened: Optional[ExceptionRecord] = None
        async with self.repository.atomic():
            match.status = MatchStatus.REJECTED
            match.rejected_at = now
            match.rejected_by = actor
            match.rejection_reason = reason
            await self.repository.save_match(match)

            if was_confirmed:
                await self.repository.update_transaction_status(
                    match.transaction_id, TransactionStatus.UNMATCHED
                )
                if match.ledger_entry_id:
                    await self.repository.update_ledger_entry_reconciled(match.ledger_entry_id, False)

            # an exception closed by this match goes back to the review queue
            exception = await self._find_exception(session.id, match.transaction_id)
            if exception is not None and exception.resolution == ExceptionResolution.MATCHED:
                exception.resolution = None
                exception.resolved_at = None
                exception.resolved_by = None
                exception.resolution_note = f"Reopened: match {match.id} rejected"
                exception.updated_at = now
                await self.repository.save_exception(exception)
                reopened = exception

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.MATCH_REJECTED,
            session.account_id,
            {
                "transaction_id": match.transaction_id,
                "ledger_entry_id": match.ledger_entry_id,
                "previous_status": MatchStatus.CONFIRMED.value if was_confirmed else MatchStatus.PENDING.value,
                "reason": reason,
                "reopened_exception_id": reopened.id if reopened else None,
            },
            session_id=session.id,
            match_id=match.id,
            actor=actor,
        )
        return match

    async def exclude_transaction(
        self,
        transaction_id: str,
        reason: str,
        actor: str,
        session_id: Optional[str] = None,
    ) -> Match:
        """
        Exclude a transaction from reconciliation in its session.

        Records an EXCLUDED match with no ledger entry. A PENDING match is
        rejected first; a CONFIRMED match must be rejected explicitly.
        """
        return await self._exclude(
            transaction_id,
            reason,
            actor,
            session_id=session_id,
        )

    async def resolve_exception(
        self,
        exception_id: str,
        resolution: ExceptionResolution,
        actor: str,
        ledger_entry_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> ExceptionRecord:
        """
        Resolve an exception.

        MATCHED needs ledger_entry_id and confirms a manual match.
        EXCLUDED excludes the transaction. CREATED_ENTRY confirms against the
        newly created entry when ledger_entry_id is given. IGNORED only closes
        the exception.
        """
        exception = await self.repository.get_exception(exception_id)
        if exception is None:
            raise ExceptionNotFoundError(
                f"Exception {exception_id} not found",
                details={"exception_id": exception_id}
            )
        if exception.is_resolved:
            raise ExceptionAlreadyResolvedError(
                f"Exception {exception_id} is already resolved as {exception.resolution.value}",
                details={"exception_id": exception_id, "resolution": exception.resolution.value}
            )

        session = await self._require_session(exception.session_id)

        if resolution == ExceptionResolution.MATCHED:
            if not ledger_entry_id:
                raise InvalidResolutionError(
                    "ledger_entry_id is required to resolve an exception as MATCHED",
                    details={"exception_id": exception_id}
                )
            await self._confirm(
                exception.transaction_id,
                ledger_entry_id,
                actor,
                session_id=session.id,
                exception_resolution=ExceptionResolution.MATCHED,
                note=note,
            )
        elif resolution == ExceptionResolution.EXCLUDED:
            await self._exclude(
                exception.transaction_id,
                note or "Excluded while resolving exception",
                actor,
                session_id=session.id,
                note=note,
            )
        elif resolution == ExceptionResolution.CREATED_ENTRY and ledger_entry_id:
            await self._confirm(
                exception.transaction_id,
                ledger_entry_id,
                actor,
                session_id=session.id,
                exception_resolution=ExceptionResolution.CREATED_ENTRY,
                note=note,
            )
        else:
            await self._close_exception(exception, resolution, actor, note)
            await self.repository.save_exception(exception)
            await self._audit_exception_resolved(session, exception, actor)

        return await self.repository.get_exception(exception_id)

    # ==================== Internals ====================

    async def _require_session(self, session_id: str) -> ReconciliationSession:
        session = await self.repository.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"Reconciliation session {session_id} not found",
                details={"session_id": session_id}
            )
        if session.is_terminal:
            raise SessionNotInProgressError(
                f"Session {session_id} is {session.status.value} and can no longer be edited",
                details={"session_id": session_id, "status": session.status.value}
            )
        return session

    async def _require_transaction(self, transaction_id: str) -> BankTransaction:
        transaction = await self.candidate_store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found",
                details={"transaction_id": transaction_id}
            )
        return transaction

    async def _require_ledger_entry(self, ledger_entry_id: str) -> LedgerEntry:
        entry = await self.candidate_store.get_ledger_entry(ledger_entry_id)
        if entry is None:
            raise LedgerEntryNotFoundError(
                f"Ledger entry {ledger_entry_id} not found",
                details={"ledger_entry_id": ledger_entry_id}
            )
        return entry

    async def _session_for_transaction(
        self, transaction_id: str, session_id: Optional[str]
    ) -> ReconciliationSession:
        """
        Session an operation applies to: the explicit session_id, else the
        session of the transaction's latest active match or open exception.
        """
        if session_id:
            return await self._require_session(session_id)

        matches = await self.repository.list_matches_for_transaction(transaction_id)
        active = [m for m in matches if m.status != MatchStatus.REJECTED]
        if active:
            return await self._require_session(active[-1].session_id)

        exceptions = await self.repository.list_exceptions_for_transaction(transaction_id)
        open_exceptions = [e for e in exceptions if not e.is_resolved]
        if open_exceptions:
            return await self._require_session(open_exceptions[-1].session_id)

        raise SessionNotFoundError(
            f"Transaction {transaction_id} is not part of any open session; pass session_id",
            details={"transaction_id": transaction_id}
        )

    async def _active_match(self, session_id: str, transaction_id: str) -> Optional[Match]:
        matches: List[Match] = await self.repository.list_matches_for_transaction(transaction_id)
        for match in matches:
            if match.session_id == session_id and match.status != MatchStatus.REJECTED:
                return match
        return None

    async def _find_exception(self, session_id: str, transaction_id: str) -> Optional[ExceptionRecord]:
        exceptions = await self.repository.list_exceptions_for_transaction(transaction_id)
        in_session = [e for e in exceptions if e.session_id == session_id]
        return in_session[-1] if in_session else None

    @staticmethod
    async def _close_exception(
        exception: ExceptionRecord,
        resolution: ExceptionResolution,
        actor: str,
        note: Optional[str],
    ) -> None:
        now = utc_now()
        exception.resolution = resolution
        exception.resolved_at = now
        exception.resolved_by = actor
        exception.resolution_note = note
        exception.updated_at = now

    async def _resolve_open_exception(
        self,
        session_id: str,
        transaction_id: str,
        resolution: ExceptionResolution,
        actor: str,
        note: Optional[str],
    ) -> Optional[ExceptionRecord]:
        exception = await self._find_exception(session_id, transaction_id)
        if exception is None or exception.is_resolved:
            return None
        await self._close_exception(exception, resolution, actor, note)
        await self.repository.save_exception(exception)
        return exception

    async def _reject_superseded(self, match: Match, actor: str) -> None:
        now = utc_now()
        match.status = MatchStatus.REJECTED
        match.rejected_at = now
        match.rejected_by = actor
        match.rejection_reason = "Superseded by manual resolution"
        await self.repository.save_match(match)

    async def _confirm(
        self,
        transaction_id: str,
        ledger_entry_id: str,
        actor: str,
        session_id: Optional[str],
        exception_resolution: ExceptionResolution,
        note: Optional[str] = None,
    ) -> Match:
        transaction = await self._require_transaction(transaction_id)
        entry = await self._require_ledger_entry(ledger_entry_id)
        session = await self._session_for_transaction(transaction_id, session_id)
        existing = await self._active_match(session.id, transaction_id)

        if existing is not None and existing.status == MatchStatus.CONFIRMED:
            if existing.ledger_entry_id == ledger_entry_id:
                return existing
            raise DuplicateMatchError(
                f"Transaction {transaction_id} is already confirmed against "
                f"ledger entry {existing.ledger_entry_id}; reject that match first",
                details={"existing_match_id": existing.id, "transaction_id": transaction_id}
            )

        now = utc_now()
        resolved_exception: Optional[ExceptionRecord] = None

        async with self.repository.atomic():
            if (
                existing is not None
                and existing.status == MatchStatus.PENDING
                and existing.ledger_entry_id == ledger_entry_id
            ):
                match = existing
                match.status = MatchStatus.CONFIRMED
                match.confirmed_at = now
                match.confirmed_by = actor
                await self.repository.save_match(match)
            else:
                if existing is not None:
                    await self._reject_superseded(existing, actor)

                claiming = await self.repository.find_claiming_match(ledger_entry_id)
                if claiming is not None:
                    raise LedgerEntryAlreadyClaimedError(
                        f"Ledger entry {ledger_entry_id} is already claimed by match {claiming.id}",
                        details={"existing_match_id": claiming.id, "ledger_entry_id": ledger_entry_id}
                    )

                match = Match(
                    session_id=session.id,
                    transaction_id=transaction_id,
                    ledger_entry_id=ledger_entry_id,
                    match_type=MatchType.MANUAL,
                    confidence=1.0,
                    criteria={
                        "amountMatch": amount_delta(transaction, entry) == 0,
                        "dateMatch": days_between(transaction, entry) == 0,
                        "referenceMatch": reference_matches(transaction, entry),
                        "amountDiff": str(amount_delta(transaction, entry)),
                        "daysDiff": days_between(transaction, entry),
                    },
                    status=MatchStatus.CONFIRMED,
                    created_at=now,
                    confirmed_at=now,
                    confirmed_by=actor,
                )
                await self.repository.save_match(match)

            await self.repository.update_transaction_status(transaction_id, TransactionStatus.MATCHED)
            await self.repository.update_ledger_entry_reconciled(ledger_entry_id, True)
            resolved_exception = await self._resolve_open_exception(
                session.id, transaction_id, exception_resolution, actor, note
            )

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.MATCH_CONFIRMED,
            session.account_id,
            {
                "transaction_id": transaction_id,
                "ledger_entry_id": ledger_entry_id,
                "match_type": match.match_type.value,
                "superseded_match_id": existing.id if existing is not None and existing.id != match.id else None,
            },
            session_id=session.id,
            match_id=match.id,
            actor=actor,
        )
        if resolved_exception is not None:
            await self._audit_exception_resolved(session, resolved_exception, actor)

        return match

    async def _exclude(
        self,
        transaction_id: str,
        reason: str,
        actor: str,
        session_id: Optional[str],
        note: Optional[str] = None,
    ) -> Match:
        await self._require_transaction(transaction_id)
        session = await self._session_for_transaction(transaction_id, session_id)
        existing = await self._active_match(session.id, transaction_id)

        if existing is not None and existing.status == MatchStatus.EXCLUDED:
            return existing
        if existing is not None and existing.status == MatchStatus.CONFIRMED:
            raise DuplicateMatchError(
                f"Transaction {transaction_id} has a confirmed match; reject it before excluding",
                details={"existing_match_id": existing.id, "transaction_id": transaction_id}
            )

        now = utc_now()
        resolved_exception: Optional[ExceptionRecord] = None

        async with self.repository.atomic():
            if existing is not None:
                await self._reject_superseded(existing, actor)

            match = Match(
                session_id=session.id,
                transaction_id=transaction_id,
                ledger_entry_id=None,
                match_type=MatchType.MANUAL,
                confidence=1.0,
                criteria={"reason": reason},
                status=MatchStatus.EXCLUDED,
                created_at=now,
                confirmed_at=now,
                confirmed_by=actor,
            )
            await self.repository.save_match(match)
            resolved_exception = await self._resolve_open_exception(
                session.id, transaction_id, ExceptionResolution.EXCLUDED, actor, note or reason
            )

        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.TRANSACTION_EXCLUDED,
            session.account_id,
            {"transaction_id": transaction_id, "reason": reason},
            session_id=session.id,
            match_id=match.id,
            actor=actor,
        )
        if resolved_exception is not None:
            await self._audit_exception_resolved(session, resolved_exception, actor)

        return match

    async def _audit_exception_resolved(
        self,
        session: ReconciliationSession,
        exception: ExceptionRecord,
        actor: str,
    ) -> None:
        await record_reconciliation_event(
            self.repository,
            ReconciliationAuditEvent.EXCEPTION_RESOLVED,
            session.account_id,
            {
                "exception_id": exception.id,
                "transaction_id": exception.transaction_id,
                "resolution": exception.resolution.value if exception.resolution else None,
                "note": exception.resolution_note,
            },
            session_id=session.id,
            actor=actor,
        )
