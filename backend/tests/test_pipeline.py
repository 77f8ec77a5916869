"""
Unit Tests for the matching pipeline

Tests:
- Tier order (rule -> exact -> fuzzy -> semantic)
- Pool exclusivity within a run
- Auto-confirmation and write-backs
- Exception creation and reuse on reruns
- Persistence failures are isolated to one transaction

Run with: pytest backend/tests/test_pipeline.py -v
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from reconciliation.candidate_pool import CandidatePool
from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import (
    ExceptionResolution,
    ExceptionType,
    MatchStatus,
    MatchType,
    RuleField,
    RuleOperator,
    TransactionStatus,
)
from reconciliation.errors import LedgerEntryAlreadyClaimedError
from reconciliation.models import (
    ExceptionRecord,
    Match,
    MatchingRule,
    ReconciliationSession,
    RuleAction,
    RuleCondition,
)
from reconciliation.pipeline import MatchingPipeline
from reconciliation.semantic.client import SemanticMatchResult, SemanticMatcher

from conftest import ACCOUNT_ID, PERIOD_END, PERIOD_START


def _session(config=None):
    return ReconciliationSession(
        account_id=ACCOUNT_ID,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        config=config or ReconciliationConfig(),
    )


class TestCandidatePool:
    """Test the consumable candidate pool."""

    @pytest.mark.asyncio
    async def test_claim_removes_entry(self, make_entry):
        pool = CandidatePool([make_entry("le-1", "10.00"), make_entry("le-2", "20.00")])

        await pool.claim("le-1", "tx-1")

        assert "le-1" not in pool
        assert [e.id for e in pool.available()] == ["le-2"]
        assert pool.claimed == {"le-1": "tx-1"}

    @pytest.mark.asyncio
    async def test_second_claim_fails(self, make_entry):
        pool = CandidatePool([make_entry("le-1", "10.00")])
        await pool.claim("le-1", "tx-1")

        with pytest.raises(LedgerEntryAlreadyClaimedError) as exc_info:
            await pool.claim("le-1", "tx-2")

        assert exc_info.value.details["claimed_by"] == "tx-1"

    @pytest.mark.asyncio
    async def test_concurrent_claims_only_one_wins(self, make_entry):
        pool = CandidatePool([make_entry("le-1", "10.00")])

        results = await asyncio.gather(
            *(pool.claim("le-1", f"tx-{i}") for i in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(pool) == 0

    @pytest.mark.asyncio
    async def test_release_returns_entry(self, make_entry):
        pool = CandidatePool([make_entry("le-1", "10.00")])
        entry = await pool.claim("le-1", "tx-1")

        await pool.release(entry)

        assert "le-1" in pool
        assert pool.claimed == {}
        assert (await pool.claim("le-1", "tx-2")).id == "le-1"


class TestMatchingPipeline:
    """Test end-to-end pipeline behaviour against the in-memory store."""

    @pytest.fixture
    def pipeline(self, store):
        return MatchingPipeline(store, store)

    async def _run(self, pipeline, store, transactions, entries, rules=None, config=None, **kwargs):
        for t in transactions:
            store.add_transaction(t)
        for e in entries:
            store.add_ledger_entry(e)
        session = _session(config)
        await store.save_session(session)
        result = await pipeline.run(session, transactions, CandidatePool(entries), rules or [], **kwargs)
        return session, result

    @pytest.mark.asyncio
    async def test_exact_match_auto_confirms(self, pipeline, store, make_transaction, make_entry):
        """Exact match with reference: confidence 1.0, confirmed, written back."""
        transaction = make_transaction("tx-1", "1000.00", date(2024, 1, 15), reference="INV-001")
        entry = make_entry("le-1", "1000.00", date(2024, 1, 15), reference="INV-001")

        session, result = await self._run(pipeline, store, [transaction], [entry])

        match = result.outcomes[0].match
        assert match.match_type == MatchType.EXACT
        assert match.confidence == 1.0
        assert match.status == MatchStatus.CONFIRMED
        assert match.confirmed_by == "system"
        assert result.auto_confirmed == 1
        assert store.transactions["tx-1"].reconciliation_status == TransactionStatus.MATCHED
        assert store.ledger_entries["le-1"].reconciled is True

    @pytest.mark.asyncio
    async def test_fuzzy_match_stays_pending(self, pipeline, store, make_transaction, make_entry):
        transaction = make_transaction(
            "tx-1", "1000.01", date(2024, 1, 15), description="Payment from ABC Company"
        )
        entry = make_entry("le-1", "1000.00", date(2024, 1, 16), description="ABC Company payment")

        _, result = await self._run(pipeline, store, [transaction], [entry])

        match = result.outcomes[0].match
        assert match.match_type == MatchType.FUZZY
        assert 0.75 <= match.confidence < 0.99
        assert match.status == MatchStatus.PENDING
        assert store.transactions["tx-1"].reconciliation_status == TransactionStatus.UNMATCHED
        assert store.ledger_entries["le-1"].reconciled is False

    @pytest.mark.asyncio
    async def test_two_close_candidates_raise_multiple_matches(self, pipeline, store, make_transaction, make_entry):
        transaction = make_transaction("tx-1", "500.00", description="Card payment 4411")
        entries = [
            make_entry("le-1", "500.50", description="Office chairs"),
            make_entry("le-2", "499.50", description="Insurance premium"),
        ]

        _, result = await self._run(pipeline, store, [transaction], entries)

        exception = result.outcomes[0].exception
        assert exception.exception_type == ExceptionType.MULTIPLE_MATCHES
        assert result.exceptions_created == 1
        assert len(store.matches) == 0

    @pytest.mark.asyncio
    async def test_empty_pool_gives_no_match_found(self, pipeline, store, make_transaction):
        _, result = await self._run(pipeline, store, [make_transaction("tx-1", "42.00")], [])

        assert result.outcomes[0].exception.exception_type == ExceptionType.NO_MATCH_FOUND

    @pytest.mark.asyncio
    async def test_rule_runs_before_other_tiers(self, store, make_transaction, make_entry):
        """An OLX rule places the transaction before exact, fuzzy or semantic run."""
        matcher = AsyncMock(spec=SemanticMatcher)
        pipeline = MatchingPipeline(store, store, semantic_matcher=matcher)
        rule = MatchingRule(
            name="OLX sales",
            priority=1,
            conditions=[RuleCondition(RuleField.DESCRIPTION, RuleOperator.CONTAINS, "OLX")],
            action=RuleAction(account_code="402-01", auto_confirm=True),
        )
        await store.save_rule(rule)

        transaction = make_transaction("tx-1", "149.99", description="OLX payout 8812")
        exact_elsewhere = make_entry("le-1", "149.99", account_code="700-00")
        rule_target = make_entry("le-2", "149.50", account_code="402-01")

        _, result = await self._run(
            pipeline, store, [transaction], [exact_elsewhere, rule_target],
            rules=[rule], config=ReconciliationConfig(semantic_enabled=True),
        )

        match = result.outcomes[0].match
        assert match.match_type == MatchType.RULE
        assert match.ledger_entry_id == "le-2"
        assert match.confidence == 1.0
        assert match.status == MatchStatus.CONFIRMED
        assert match.rule_id == rule.id
        assert store.rules[rule.id].hit_count == 1
        matcher.match.assert_not_called()

    @pytest.mark.asyncio
    async def test_pool_exclusivity(self, pipeline, store, make_transaction, make_entry):
        """Two transactions competing for one entry: the older one wins."""
        older = make_transaction("tx-b", "75.00", date(2024, 1, 10))
        newer = make_transaction("tx-a", "75.00", date(2024, 1, 12))
        entry = make_entry("le-1", "75.00", date(2024, 1, 10))

        _, result = await self._run(pipeline, store, [newer, older], [entry])

        by_tx = {o.transaction_id: o for o in result.outcomes}
        assert by_tx["tx-b"].match.ledger_entry_id == "le-1"
        assert by_tx["tx-a"].match is None
        assert by_tx["tx-a"].exception.exception_type == ExceptionType.NO_MATCH_FOUND

        claiming = [m for m in store.matches.values() if m.ledger_entry_id == "le-1"]
        assert len(claiming) == 1

    @pytest.mark.asyncio
    async def test_processes_oldest_first(self, pipeline, store, make_transaction, make_entry):
        transactions = [
            make_transaction("tx-3", "1.00", date(2024, 1, 20)),
            make_transaction("tx-1", "1.00", date(2024, 1, 5)),
            make_transaction("tx-2", "1.00", date(2024, 1, 5)),
        ]

        _, result = await self._run(pipeline, store, transactions, [])

        assert [o.transaction_id for o in result.outcomes] == ["tx-1", "tx-2", "tx-3"]

    @pytest.mark.asyncio
    async def test_semantic_timeout_falls_through_to_exception(self, store, make_transaction, make_entry):
        class SlowMatcher(SemanticMatcher):
            async def match(self, transaction, candidates):
                await asyncio.sleep(5)

        pipeline = MatchingPipeline(store, store, semantic_matcher=SlowMatcher())
        config = ReconciliationConfig(semantic_enabled=True, semantic_timeout_seconds=0.05)
        transaction = make_transaction("tx-1", "300.00", description="Consulting")
        entry = make_entry("le-1", "320.00", description="Hosting")

        _, result = await self._run(pipeline, store, [transaction], [entry], config=config)

        assert result.outcomes[0].match is None
        assert result.outcomes[0].exception is not None

    @pytest.mark.asyncio
    async def test_semantic_match_accepted(self, store, make_transaction, make_entry):
        matcher = AsyncMock(spec=SemanticMatcher)
        matcher.match.return_value = SemanticMatchResult("le-1", 0.9, rationale="same invoice")
        pipeline = MatchingPipeline(store, store, semantic_matcher=matcher)
        config = ReconciliationConfig(semantic_enabled=True)
        transaction = make_transaction("tx-1", "300.00", description="Consulting")
        entry = make_entry("le-1", "320.00", description="Hosting")

        _, result = await self._run(pipeline, store, [transaction], [entry], config=config)

        match = result.outcomes[0].match
        assert match.match_type == MatchType.SEMANTIC
        assert match.status == MatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_fuzzy_auto_confirm_can_be_disabled(self, pipeline, store, make_transaction, make_entry):
        config = ReconciliationConfig(
            auto_confirm_threshold=0.8,
            auto_confirm_match_types=(MatchType.RULE, MatchType.EXACT),
        )
        transaction = make_transaction("tx-1", "1000.01", description="Payment from ABC Company")
        entry = make_entry("le-1", "1000.00", description="ABC Company payment")

        _, result = await self._run(pipeline, store, [transaction], [entry], config=config)

        assert result.outcomes[0].match.status == MatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_open_exception_is_updated_not_duplicated(self, pipeline, store, make_transaction):
        transaction = make_transaction("tx-1", "42.00")
        store.add_transaction(transaction)
        session = _session()
        await store.save_session(session)
        existing = ExceptionRecord(
            session_id=session.id,
            transaction_id="tx-1",
            exception_type=ExceptionType.DATE_DISCREPANCY,
            details={},
        )
        await store.save_exception(existing)

        result = await pipeline.run(
            session, [transaction], CandidatePool([]), [],
            open_exceptions={"tx-1": existing},
        )

        assert result.exceptions_updated == 1
        assert result.exceptions_created == 0
        assert len(store.exceptions) == 1
        assert store.exceptions[existing.id].exception_type == ExceptionType.NO_MATCH_FOUND

    @pytest.mark.asyncio
    async def test_open_exception_resolved_when_now_matched(self, pipeline, store, make_transaction, make_entry):
        transaction = make_transaction("tx-1", "42.00")
        entry = make_entry("le-1", "42.00")
        store.add_transaction(transaction)
        store.add_ledger_entry(entry)
        session = _session()
        await store.save_session(session)
        existing = ExceptionRecord(
            session_id=session.id,
            transaction_id="tx-1",
            exception_type=ExceptionType.NO_MATCH_FOUND,
            details={},
        )
        await store.save_exception(existing)

        result = await pipeline.run(
            session, [transaction], CandidatePool([entry]), [],
            open_exceptions={"tx-1": existing},
        )

        assert result.exceptions_resolved == 1
        assert store.exceptions[existing.id].resolution == ExceptionResolution.MATCHED

    @pytest.mark.asyncio
    async def test_claimed_elsewhere_is_isolated(self, pipeline, store, make_transaction, make_entry):
        """A persistence-level claim conflict fails one transaction; the run continues."""
        entry = make_entry("le-1", "10.00")
        store.add_ledger_entry(entry)
        other_session = _session()
        await store.save_session(other_session)
        await store.save_match(Match(
            session_id=other_session.id,
            transaction_id="tx-other",
            ledger_entry_id="le-1",
            match_type=MatchType.MANUAL,
            confidence=1.0,
            criteria={},
            status=MatchStatus.PENDING,
        ))

        transactions = [
            make_transaction("tx-1", "10.00", date(2024, 1, 15)),
            make_transaction("tx-2", "99.00", date(2024, 1, 16)),
        ]
        _, result = await self._run(pipeline, store, transactions, [entry])

        assert result.failed == 1
        assert result.outcomes[0].error == "ledger_entry_already_claimed"
        assert result.outcomes[1].exception is not None
        assert result.processed == 2

    @pytest.mark.asyncio
    async def test_duplicate_match_releases_entry(self, pipeline, store, make_transaction, make_entry):
        """An entry claimed for a match that fails to save stays available to later transactions."""
        entry = make_entry("le-1", "75.00", date(2024, 1, 10))
        transactions = [
            make_transaction("tx-1", "75.00", date(2024, 1, 10)),
            make_transaction("tx-2", "75.00", date(2024, 1, 10)),
        ]
        for t in transactions:
            store.add_transaction(t)
        store.add_ledger_entry(entry)
        session = _session()
        await store.save_session(session)
        # excluded by a reviewer while the run was in flight
        await store.save_match(Match(
            session_id=session.id,
            transaction_id="tx-1",
            ledger_entry_id=None,
            match_type=MatchType.MANUAL,
            confidence=1.0,
            criteria={"reason": "Duplicate import"},
            status=MatchStatus.EXCLUDED,
        ))
        pool = CandidatePool([entry])

        result = await pipeline.run(session, transactions, pool, [])

        assert result.outcomes[0].error == "duplicate_match"
        assert result.outcomes[1].match is not None
        assert result.outcomes[1].match.ledger_entry_id == "le-1"
        assert pool.claimed == {"le-1": "tx-2"}
        assert store.ledger_entries["le-1"].reconciled is True

    @pytest.mark.asyncio
    async def test_cancellation_between_transactions(self, pipeline, store, make_transaction):
        transactions = [make_transaction(f"tx-{i}", "1.00") for i in range(3)]
        checks = []

        def should_cancel():
            checks.append(True)
            return len(checks) > 1

        _, result = await self._run(pipeline, store, transactions, [], should_cancel=should_cancel)

        assert result.cancelled is True
        assert result.processed == 1
