"""
Unit Tests for manual resolution of reconciliation results

Tests:
- Confirming pending and manual matches
- Rejecting matches (ledger entry released, exception reopened)
- Excluding transactions
- Resolving exceptions

Run with: pytest backend/tests/test_resolution_service.py -v
"""

from datetime import date

import pytest
import pytest_asyncio

from reconciliation.audit import ReconciliationAuditEvent
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
)
from reconciliation.services.resolution_service import ResolutionService
from reconciliation.services.session_manager import SessionManager

from conftest import ACCOUNT_ID, PERIOD_END, PERIOD_START


class TestResolutionService:
    """Test review-queue operations after a pipeline run."""

    @pytest.fixture
    def manager(self, store):
        return SessionManager(store, store, store)

    @pytest.fixture
    def service(self, store):
        return ResolutionService(store, store)

    @pytest_asyncio.fixture
    async def session(self, store, manager, make_transaction, make_entry):
        """
        tx-1: exact, auto-confirmed against le-1
        tx-2: fuzzy, pending against le-2
        tx-3: NO_MATCH_FOUND exception; le-3 is an unused entry
        """
        store.add_transaction(make_transaction("tx-1", "1000.00", date(2024, 1, 10), reference="INV-001"))
        store.add_ledger_entry(make_entry("le-1", "1000.00", date(2024, 1, 10), reference="INV-001"))
        store.add_transaction(make_transaction(
            "tx-2", "250.01", date(2024, 1, 15), description="Payment from ABC Company"
        ))
        store.add_ledger_entry(make_entry(
            "le-2", "250.00", date(2024, 1, 16), description="ABC Company payment"
        ))
        store.add_transaction(make_transaction("tx-3", "42.00", date(2024, 1, 20), description="Parking"))

        session = await manager.start_session(ACCOUNT_ID, PERIOD_START, PERIOD_END)
        await manager.run_pipeline(session.id)

        # booked after the run, outside the tolerance of tx-3
        store.add_ledger_entry(make_entry("le-3", "42.00", date(2024, 1, 28), description="Parking garage"))
        return session

    def _match_for(self, store, transaction_id, status=None):
        found = [
            m for m in store.matches.values()
            if m.transaction_id == transaction_id and (status is None or m.status == status)
        ]
        assert len(found) == 1
        return found[0]

    def _exception_for(self, store, transaction_id):
        found = [e for e in store.exceptions.values() if e.transaction_id == transaction_id]
        assert len(found) == 1
        return found[0]

    # ==================== confirm_match ====================

    @pytest.mark.asyncio
    async def test_confirm_pending_match(self, store, service, session):
        pending = self._match_for(store, "tx-2", MatchStatus.PENDING)

        match = await service.confirm_match("tx-2", "le-2", actor="reviewer")

        assert match.id == pending.id
        assert match.match_type == MatchType.FUZZY
        assert match.status == MatchStatus.CONFIRMED
        assert match.confirmed_by == "reviewer"
        assert store.transactions["tx-2"].reconciliation_status == TransactionStatus.MATCHED
        assert store.ledger_entries["le-2"].reconciled is True
        assert store.audit_log[-1]["event"] == ReconciliationAuditEvent.MATCH_CONFIRMED

    @pytest.mark.asyncio
    async def test_confirm_manual_pairing_resolves_exception(self, store, service, session):
        match = await service.confirm_match("tx-3", "le-3", actor="reviewer", session_id=session.id)

        assert match.match_type == MatchType.MANUAL
        assert match.status == MatchStatus.CONFIRMED
        assert match.confidence == 1.0
        assert match.criteria["amountMatch"] is True
        assert match.criteria["daysDiff"] == 8

        exception = self._exception_for(store, "tx-3")
        assert exception.resolution == ExceptionResolution.MATCHED
        assert exception.resolved_by == "reviewer"
        assert store.audit_log[-1]["event"] == ReconciliationAuditEvent.EXCEPTION_RESOLVED

    @pytest.mark.asyncio
    async def test_confirm_other_entry_supersedes_pending_match(self, store, service, session):
        pending = self._match_for(store, "tx-2", MatchStatus.PENDING)

        match = await service.confirm_match("tx-2", "le-3", actor="reviewer")

        assert match.id != pending.id
        superseded = store.matches[pending.id]
        assert superseded.status == MatchStatus.REJECTED
        assert superseded.rejection_reason == "Superseded by manual resolution"
        assert store.ledger_entries["le-2"].reconciled is False

    @pytest.mark.asyncio
    async def test_confirm_entry_claimed_elsewhere(self, store, service, session):
        with pytest.raises(LedgerEntryAlreadyClaimedError):
            await service.confirm_match("tx-3", "le-1", actor="reviewer", session_id=session.id)

        assert self._exception_for(store, "tx-3").resolution is None
        assert store.transactions["tx-3"].reconciliation_status == TransactionStatus.UNMATCHED

    @pytest.mark.asyncio
    async def test_confirm_already_confirmed(self, store, service, session):
        existing = self._match_for(store, "tx-1", MatchStatus.CONFIRMED)

        again = await service.confirm_match("tx-1", "le-1", actor="reviewer")
        assert again.id == existing.id

        with pytest.raises(DuplicateMatchError):
            await service.confirm_match("tx-1", "le-3", actor="reviewer")

    @pytest.mark.asyncio
    async def test_confirm_unknown_entry(self, service, session):
        with pytest.raises(LedgerEntryNotFoundError):
            await service.confirm_match("tx-3", "le-missing", actor="reviewer")

    @pytest.mark.asyncio
    async def test_confirm_transaction_outside_any_session(self, store, service, session, make_transaction):
        store.add_transaction(make_transaction("tx-9", "42.00", date(2024, 3, 1)))

        with pytest.raises(SessionNotFoundError):
            await service.confirm_match("tx-9", "le-3", actor="reviewer")

    @pytest.mark.asyncio
    async def test_terminal_session_is_read_only(self, service, manager, session):
        await manager.complete_session(session.id)

        with pytest.raises(SessionNotInProgressError):
            await service.confirm_match("tx-2", "le-2", actor="reviewer")

    # ==================== reject_match ====================

    @pytest.mark.asyncio
    async def test_reject_confirmed_match_releases_entry(self, store, service, session):
        confirmed = self._match_for(store, "tx-1", MatchStatus.CONFIRMED)

        match = await service.reject_match(confirmed.id, actor="reviewer", reason="wrong invoice")

        assert match.status == MatchStatus.REJECTED
        assert match.rejected_by == "reviewer"
        assert match.rejection_reason == "wrong invoice"
        assert store.transactions["tx-1"].reconciliation_status == TransactionStatus.UNMATCHED
        assert store.ledger_entries["le-1"].reconciled is False

        # the released entry can be paired again
        rematched = await service.confirm_match("tx-1", "le-1", actor="reviewer", session_id=session.id)
        assert rematched.match_type == MatchType.MANUAL

    @pytest.mark.asyncio
    async def test_reject_reopens_exception_closed_by_match(self, store, service, session):
        match = await service.confirm_match("tx-3", "le-3", actor="reviewer", session_id=session.id)

        await service.reject_match(match.id, actor="reviewer")

        exception = self._exception_for(store, "tx-3")
        assert exception.resolution is None
        assert exception.resolution_note == f"Reopened: match {match.id} rejected"

    @pytest.mark.asyncio
    async def test_reject_twice(self, store, service, session):
        pending = self._match_for(store, "tx-2", MatchStatus.PENDING)
        await service.reject_match(pending.id, actor="reviewer")

        with pytest.raises(InvalidMatchStateError):
            await service.reject_match(pending.id, actor="reviewer")

    @pytest.mark.asyncio
    async def test_reject_unknown_match(self, service, session):
        with pytest.raises(MatchNotFoundError):
            await service.reject_match("missing", actor="reviewer")

    # ==================== exclude_transaction ====================

    @pytest.mark.asyncio
    async def test_exclude_transaction_with_exception(self, store, service, manager, session):
        match = await service.exclude_transaction("tx-3", "Bank fee, booked elsewhere", actor="reviewer")

        assert match.status == MatchStatus.EXCLUDED
        assert match.ledger_entry_id is None
        assert match.criteria == {"reason": "Bank fee, booked elsewhere"}

        exception = self._exception_for(store, "tx-3")
        assert exception.resolution == ExceptionResolution.EXCLUDED

        stats = await manager.get_statistics(session.id)
        assert stats.excluded_count == 1
        assert stats.exception_count == 0

    @pytest.mark.asyncio
    async def test_exclude_rejects_pending_match(self, store, service, session):
        pending = self._match_for(store, "tx-2", MatchStatus.PENDING)

        await service.exclude_transaction("tx-2", "Duplicate import", actor="reviewer")

        assert store.matches[pending.id].status == MatchStatus.REJECTED

    @pytest.mark.asyncio
    async def test_exclude_is_idempotent(self, service, session):
        first = await service.exclude_transaction("tx-3", "Ignore", actor="reviewer")
        second = await service.exclude_transaction("tx-3", "Ignore", actor="reviewer")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_exclude_confirmed_transaction(self, service, session):
        with pytest.raises(DuplicateMatchError):
            await service.exclude_transaction("tx-1", "Ignore", actor="reviewer")

    # ==================== resolve_exception ====================

    @pytest.mark.asyncio
    async def test_resolve_as_matched(self, store, service, session):
        exception = self._exception_for(store, "tx-3")

        resolved = await service.resolve_exception(
            exception.id, ExceptionResolution.MATCHED, actor="reviewer", ledger_entry_id="le-3"
        )

        assert resolved.resolution == ExceptionResolution.MATCHED
        assert self._match_for(store, "tx-3").ledger_entry_id == "le-3"

    @pytest.mark.asyncio
    async def test_resolve_as_matched_requires_entry(self, store, service, session):
        exception = self._exception_for(store, "tx-3")

        with pytest.raises(InvalidResolutionError):
            await service.resolve_exception(exception.id, ExceptionResolution.MATCHED, actor="reviewer")

    @pytest.mark.asyncio
    async def test_resolve_as_created_entry(self, store, service, session, make_entry):
        exception = self._exception_for(store, "tx-3")
        store.add_ledger_entry(make_entry("le-new", "42.00", date(2024, 1, 20), description="Parking"))

        resolved = await service.resolve_exception(
            exception.id, ExceptionResolution.CREATED_ENTRY, actor="reviewer",
            ledger_entry_id="le-new", note="Booked from statement",
        )

        assert resolved.resolution == ExceptionResolution.CREATED_ENTRY
        assert resolved.resolution_note == "Booked from statement"
        assert store.ledger_entries["le-new"].reconciled is True

    @pytest.mark.asyncio
    async def test_resolve_as_ignored(self, store, service, session):
        exception = self._exception_for(store, "tx-3")

        resolved = await service.resolve_exception(
            exception.id, ExceptionResolution.IGNORED, actor="reviewer", note="Below materiality"
        )

        assert resolved.resolution == ExceptionResolution.IGNORED
        assert store.transactions["tx-3"].reconciliation_status == TransactionStatus.UNMATCHED

        with pytest.raises(ExceptionAlreadyResolvedError):
            await service.resolve_exception(exception.id, ExceptionResolution.IGNORED, actor="reviewer")

    @pytest.mark.asyncio
    async def test_resolve_unknown_exception(self, service, session):
        with pytest.raises(ExceptionNotFoundError):
            await service.resolve_exception("missing", ExceptionResolution.IGNORED, actor="reviewer")
