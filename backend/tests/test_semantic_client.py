"""
Unit Tests for the HTTP semantic matcher

Uses httpx.MockTransport; no network access.

Run with: pytest backend/tests/test_semantic_client.py -v
"""

import json
from types import SimpleNamespace

import httpx
import pytest

from reconciliation.errors import SemanticMatchError
from reconciliation.semantic.client import (
    HttpSemanticMatcher,
    NullSemanticMatcher,
    build_semantic_matcher,
)


class TestHttpSemanticMatcher:
    """Test request shape and response handling."""

    @pytest.fixture
    def transaction(self, make_transaction):
        return make_transaction("tx-1", "300.00", description="Consulting Q1", reference="INV-77")

    @pytest.fixture
    def candidates(self, make_entry):
        return [
            make_entry("le-1", "320.00", description="Advisory services", account_code="400-10"),
            make_entry("le-2", "290.00", description="Hosting"),
        ]

    def _matcher(self, handler, api_key="secret"):
        return HttpSemanticMatcher(
            base_url="http://semantic.test/",
            api_key=api_key,
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_posts_transaction_and_candidates(self, transaction, candidates):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "match": {"ledger_entry_id": "le-1", "confidence": 0.91, "rationale": "same client"}
            })

        result = await self._matcher(handler).match(transaction, candidates)

        assert result.ledger_entry_id == "le-1"
        assert result.confidence == 0.91
        assert result.rationale == "same client"

        assert seen["url"] == "http://semantic.test/api/semantic/match"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["transaction"]["amount"] == "300.00"
        assert seen["body"]["transaction"]["reference"] == "INV-77"
        assert [c["id"] for c in seen["body"]["candidates"]] == ["le-1", "le-2"]
        assert seen["body"]["candidates"][0]["account_code"] == "400-10"

    @pytest.mark.asyncio
    async def test_no_authorization_without_key(self, transaction, candidates):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"match": None})

        result = await self._matcher(handler, api_key=None).match(transaction, candidates)

        assert result is None
        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_http_error_raises(self, transaction, candidates):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, json={"detail": "upstream"})

        with pytest.raises(SemanticMatchError) as exc_info:
            await self._matcher(handler).match(transaction, candidates)

        assert exc_info.value.details["status_code"] == 502

    @pytest.mark.asyncio
    async def test_timeout_raises(self, transaction, candidates):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(SemanticMatchError) as exc_info:
            await self._matcher(handler).match(transaction, candidates)

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, transaction, candidates):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        with pytest.raises(SemanticMatchError):
            await self._matcher(handler).match(transaction, candidates)

    @pytest.mark.asyncio
    async def test_malformed_proposal_raises(self, transaction, candidates):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"match": {"confidence": "high"}})

        with pytest.raises(SemanticMatchError):
            await self._matcher(handler).match(transaction, candidates)


class TestBuildSemanticMatcher:
    """Test matcher selection from settings."""

    def _settings(self, **overrides):
        values = {
            "RECON_SEMANTIC_ENABLED": False,
            "SEMANTIC_MATCH_URL": "",
            "SEMANTIC_MATCH_API_KEY": "",
            "SEMANTIC_MATCH_TIMEOUT_SECONDS": 5.0,
        }
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_disabled(self):
        assert isinstance(build_semantic_matcher(self._settings()), NullSemanticMatcher)

    def test_enabled_without_url(self):
        matcher = build_semantic_matcher(self._settings(RECON_SEMANTIC_ENABLED=True))
        assert isinstance(matcher, NullSemanticMatcher)

    def test_enabled(self):
        matcher = build_semantic_matcher(self._settings(
            RECON_SEMANTIC_ENABLED=True,
            SEMANTIC_MATCH_URL="http://semantic.test",
            SEMANTIC_MATCH_TIMEOUT_SECONDS=2.0,
        ))
        assert isinstance(matcher, HttpSemanticMatcher)
        assert matcher.timeout == 2.0

    @pytest.mark.asyncio
    async def test_null_matcher_has_no_opinion(self, make_transaction, make_entry):
        result = await NullSemanticMatcher().match(make_transaction("tx-1", "1.00"), [make_entry("le-1", "1.00")])
        assert result is None
