"""
Reconciliation Domain Models

Plain dataclasses for the records the engine reads and writes:
- BankTransaction / LedgerEntry: external entities (read-only except for
  the reconciliation flags the engine writes back)
- ReconciliationSession: one per (account, period)
- Match / ExceptionRecord: pipeline outputs, never deleted
- MatchingRule: ordered, user-authored, data-driven conditions
- SessionStatistics: derived, computed once per pipeline run
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import (
    ExceptionResolution,
    ExceptionType,
    MatchStatus,
    MatchType,
    RuleField,
    RuleOperator,
    SessionStatus,
    TransactionStatus,
)


def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# ==================== External Entities ====================

@dataclass
class BankTransaction:
    """
    A bank-account transaction. Only reconciliation_status is written by the engine.
    """
    id: str
    account_id: str
    booking_date: date
    amount: Decimal
    currency: str = "PLN"
    description: str = ""
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None
    reconciliation_status: TransactionStatus = TransactionStatus.UNMATCHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "booking_date": _format_date(self.booking_date),
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "counterparty_name": self.counterparty_name,
            "reference": self.reference,
            "reconciliation_status": self.reconciliation_status.value,
        }


@dataclass
class LedgerEntry:
    """
    An accounting ledger entry. Only `reconciled` is written by the engine.
    """
    id: str
    ledger_account_id: str
    entry_date: date
    amount: Decimal
    description: str = ""
    reference: Optional[str] = None
    account_code: Optional[str] = None
    reconciled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ledger_account_id": self.ledger_account_id,
            "entry_date": _format_date(self.entry_date),
            "amount": str(self.amount),
            "description": self.description,
            "reference": self.reference,
            "account_code": self.account_code,
            "reconciled": self.reconciled,
        }


@dataclass
class AccountMapping:
    """Links a bank account to the ledger account it reconciles against."""
    bank_account_id: str
    ledger_account_id: str


# ==================== Matching Rules ====================

@dataclass(frozen=True)
class RuleCondition:
    """
    A single (field, operator, value) condition.

    Conditions are data, not code: they can be stored, audited and edited
    safely. BETWEEN takes a two-element [low, high] value.
    """
    field: RuleField
    operator: RuleOperator
    value: Any
    case_sensitive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, (list, tuple)):
            value = [str(v) if isinstance(v, Decimal) else v for v in value]
        return {
            "field": self.field.value,
            "operator": self.operator.value,
            "value": value,
            "case_sensitive": self.case_sensitive,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleCondition":
        return cls(
            field=RuleField(data["field"]),
            operator=RuleOperator(data["operator"]),
            value=data.get("value"),
            case_sensitive=bool(data.get("case_sensitive", False)),
        )


@dataclass(frozen=True)
class RuleAction:
    """What a matching rule does when its conditions hold."""
    account_code: str
    auto_confirm: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"account_code": self.account_code, "auto_confirm": self.auto_confirm}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleAction":
        return cls(
            account_code=str(data["account_code"]),
            auto_confirm=bool(data.get("auto_confirm", False)),
        )


@dataclass
class MatchingRule:
    """
    User-authored matching rule. Lower priority runs first.
    """
    name: str
    priority: int
    conditions: List[RuleCondition]
    action: RuleAction
    id: str = field(default_factory=generate_id)
    enabled: bool = True
    account_id: Optional[str] = None  # None = applies to every account
    hit_count: int = 0
    last_hit_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "enabled": self.enabled,
            "account_id": self.account_id,
            "conditions": [c.to_dict() for c in self.conditions],
            "action": self.action.to_dict(),
            "hit_count": self.hit_count,
            "last_hit_at": _format_datetime(self.last_hit_at),
        }


# ==================== Session ====================

@dataclass
class SessionStatistics:
    """
    Descriptive statistics for a session, computed once per pipeline run.
    Never used as pipeline input.
    """
    total_transactions: int = 0
    matched_count: int = 0
    confirmed_count: int = 0
    pending_count: int = 0
    excluded_count: int = 0
    exception_count: int = 0
    by_match_type: Dict[str, int] = field(default_factory=dict)
    by_exception_type: Dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    match_rate: float = 0.0
    processing_duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_transactions": self.total_transactions,
            "matched_count": self.matched_count,
            "confirmed_count": self.confirmed_count,
            "pending_count": self.pending_count,
            "excluded_count": self.excluded_count,
            "exception_count": self.exception_count,
            "by_match_type": dict(self.by_match_type),
            "by_exception_type": dict(self.by_exception_type),
            "average_confidence": self.average_confidence,
            "match_rate": self.match_rate,
            "processing_duration_ms": self.processing_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SessionStatistics"]:
        if not data:
            return None
        return cls(
            total_transactions=data.get("total_transactions", 0),
            matched_count=data.get("matched_count", 0),
            confirmed_count=data.get("confirmed_count", 0),
            pending_count=data.get("pending_count", 0),
            excluded_count=data.get("excluded_count", 0),
            exception_count=data.get("exception_count", 0),
            by_match_type=dict(data.get("by_match_type") or {}),
            by_exception_type=dict(data.get("by_exception_type") or {}),
            average_confidence=data.get("average_confidence", 0.0),
            match_rate=data.get("match_rate", 0.0),
            processing_duration_ms=data.get("processing_duration_ms", 0),
        )


@dataclass
class ReconciliationSession:
    """
    A reconciliation session for one account and period.
    Mutated only by the session manager; immutable once terminal.
    """
    account_id: str
    period_start: date
    period_end: date
    config: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    id: str = field(default_factory=generate_id)
    status: SessionStatus = SessionStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    statistics: Optional[SessionStatistics] = None
    failure_reason: Optional[str] = None
    created_by: str = "system"

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "period_start": _format_date(self.period_start),
            "period_end": _format_date(self.period_end),
            "status": self.status.value,
            "config": self.config.to_dict(),
            "started_at": _format_datetime(self.started_at),
            "completed_at": _format_datetime(self.completed_at),
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "failure_reason": self.failure_reason,
            "created_by": self.created_by,
        }


# ==================== Pipeline Outputs ====================

@dataclass
class Match:
    """
    A pairing of a bank transaction with a ledger entry.

    ledger_entry_id is None only for EXCLUDED matches.
    """
    session_id: str
    transaction_id: str
    ledger_entry_id: Optional[str]
    match_type: MatchType
    confidence: float
    criteria: Dict[str, Any]
    status: MatchStatus = MatchStatus.PENDING
    id: str = field(default_factory=generate_id)
    rule_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "transaction_id": self.transaction_id,
            "ledger_entry_id": self.ledger_entry_id,
            "match_type": self.match_type.value,
            "confidence": self.confidence,
            "criteria": self.criteria,
            "status": self.status.value,
            "rule_id": self.rule_id,
            "created_at": _format_datetime(self.created_at),
            "confirmed_at": _format_datetime(self.confirmed_at),
            "confirmed_by": self.confirmed_by,
            "rejected_at": _format_datetime(self.rejected_at),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
        }


@dataclass
class ExceptionRecord:
    """
    A transaction the pipeline could not place.
    """
    session_id: str
    transaction_id: str
    exception_type: ExceptionType
    details: Dict[str, Any]
    candidate_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=generate_id)
    resolution: Optional[ExceptionResolution] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "transaction_id": self.transaction_id,
            "exception_type": self.exception_type.value,
            "details": self.details,
            "candidate_ids": list(self.candidate_ids),
            "resolution": self.resolution.value if self.resolution else None,
            "resolved_at": _format_datetime(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }
