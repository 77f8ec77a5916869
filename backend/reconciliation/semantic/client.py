"""
Semantic Matcher Boundary

The semantic tier calls an external model-backed service. The pipeline only
sees the SemanticMatcher interface: given a transaction and a short list of
candidate ledger entries it returns a proposal or None ("no opinion").

Implementations:
- HttpSemanticMatcher: POSTs to SEMANTIC_MATCH_URL via httpx
- NullSemanticMatcher: always "no opinion" (semantic tier disabled)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from reconciliation.errors import SemanticMatchError
from reconciliation.models import BankTransaction, LedgerEntry

logger = logging.getLogger(__name__)


@dataclass
class SemanticMatchResult:
    """A semantic matcher's proposal."""
    ledger_entry_id: str
    confidence: float
    rationale: Optional[str] = None


class SemanticMatcher(ABC):
    """Injected semantic matching collaborator."""

    @abstractmethod
    async def match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
    ) -> Optional[SemanticMatchResult]:
        raise NotImplementedError


class NullSemanticMatcher(SemanticMatcher):
    async def match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
    ) -> Optional[SemanticMatchResult]:
        return None


class HttpSemanticMatcher(SemanticMatcher):
    """
    Semantic matcher backed by an HTTP service.

    Request:
        POST {base_url}/api/semantic/match
        {"transaction": {...}, "candidates": [{...}, ...]}

    Response:
        {"match": {"ledger_entry_id": "...", "confidence": 0.9, "rationale": "..."}}
        or {"match": null}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _payload(transaction: BankTransaction, candidates: List[LedgerEntry]) -> Dict[str, Any]:
        return {
            "transaction": {
                "id": transaction.id,
                "booking_date": transaction.booking_date.isoformat(),
                "amount": str(transaction.amount),
                "currency": transaction.currency,
                "description": transaction.description,
                "counterparty_name": transaction.counterparty_name,
                "reference": transaction.reference,
            },
            "candidates": [
                {
                    "id": entry.id,
                    "entry_date": entry.entry_date.isoformat(),
                    "amount": str(entry.amount),
                    "description": entry.description,
                    "reference": entry.reference,
                    "account_code": entry.account_code,
                }
                for entry in candidates
            ],
        }

    async def match(
        self,
        transaction: BankTransaction,
        candidates: List[LedgerEntry],
    ) -> Optional[SemanticMatchResult]:
        url = f"{self.base_url}/api/semantic/match"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers=self._headers(),
                    json=self._payload(transaction, candidates),
                )
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException as e:
            raise SemanticMatchError(
                "Semantic matcher request timed out",
                details={"transaction_id": transaction.id}
            ) from e
        except httpx.HTTPStatusError as e:
            raise SemanticMatchError(
                f"Semantic matcher returned {e.response.status_code}",
                details={"transaction_id": transaction.id, "status_code": e.response.status_code}
            ) from e
        except httpx.RequestError as e:
            raise SemanticMatchError(
                f"Semantic matcher request error: {e}",
                details={"transaction_id": transaction.id}
            ) from e
        except ValueError as e:
            raise SemanticMatchError(
                "Semantic matcher returned invalid JSON",
                details={"transaction_id": transaction.id}
            ) from e

        proposal = data.get("match") if isinstance(data, dict) else None
        if not proposal:
            return None

        try:
            return SemanticMatchResult(
                ledger_entry_id=str(proposal["ledger_entry_id"]),
                confidence=float(proposal["confidence"]),
                rationale=proposal.get("rationale"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SemanticMatchError(
                "Semantic matcher returned a malformed proposal",
                details={"transaction_id": transaction.id, "proposal": str(proposal)}
            ) from e


def build_semantic_matcher(settings) -> SemanticMatcher:
    """Semantic matcher for the application settings."""
    if settings.RECON_SEMANTIC_ENABLED and settings.SEMANTIC_MATCH_URL:
        logger.info(f"Semantic matching enabled via {settings.SEMANTIC_MATCH_URL}")
        return HttpSemanticMatcher(
            base_url=settings.SEMANTIC_MATCH_URL,
            api_key=settings.SEMANTIC_MATCH_API_KEY,
            timeout=settings.SEMANTIC_MATCH_TIMEOUT_SECONDS,
        )
    return NullSemanticMatcher()
