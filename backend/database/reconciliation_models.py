"""
Reconciliation Engine - Database Models

Tables:
- recon_bank_transactions: bank-account transactions (read, status written back)
- recon_ledger_entries: accounting ledger entries (read, reconciled flag written back)
- recon_account_mappings: bank account -> ledger account link
- recon_matching_rules: user-authored matching rules
- recon_sessions: one row per reconciliation session
- recon_matches: pipeline and manual matches (never deleted)
- recon_exceptions: unplaced transactions (never deleted)
- recon_run_locks: one active pipeline run per account
- recon_audit_log: immutable audit trail

Partial unique indexes enforce at most one non-rejected match per
(session, transaction) and at most one PENDING/CONFIRMED match per ledger
entry.
"""

from sqlalchemy import (
    Column, String, Text, Float, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, Enum as SQLEnum, JSON, Numeric, text
)

from database.connection import Base
from reconciliation.enums import (
    ExceptionResolution,
    ExceptionType,
    MatchStatus,
    MatchType,
    SessionStatus,
    TransactionStatus,
)
from reconciliation.models import generate_id, utc_now


def _enum(enum_cls, name: str) -> SQLEnum:
    # stored as VARCHAR so no database enum type has to be managed
    return SQLEnum(enum_cls, name=name, native_enum=False, length=32)


# ==================== EXTERNAL ENTITIES ====================

class BankTransactionDB(Base):
    __tablename__ = "recon_bank_transactions"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), nullable=False, index=True)
    booking_date = Column(Date, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="PLN")
    description = Column(Text, nullable=False, default="")
    counterparty_name = Column(Text, nullable=True)
    reference = Column(String(255), nullable=True)
    reconciliation_status = Column(
        _enum(TransactionStatus, "recon_transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.UNMATCHED,
        index=True
    )
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_bank_transactions_account_date', 'account_id', 'booking_date'),
    )


class LedgerEntryDB(Base):
    __tablename__ = "recon_ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_id)
    ledger_account_id = Column(String(36), nullable=False, index=True)
    entry_date = Column(Date, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    description = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)
    account_code = Column(String(50), nullable=True, index=True)
    reconciled = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_ledger_entries_account_date', 'ledger_account_id', 'entry_date'),
    )


class AccountMappingDB(Base):
    __tablename__ = "recon_account_mappings"

    bank_account_id = Column(String(36), primary_key=True)
    ledger_account_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


# ==================== RULES ====================

class MatchingRuleDB(Base):
    """
    Matching rule. Conditions and action are stored as JSON so rules stay
    data, not code.
    """
    __tablename__ = "recon_matching_rules"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), nullable=True, index=True)  # Null = global
    name = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=100)
    enabled = Column(Boolean, nullable=False, default=True)
    conditions = Column(JSON, nullable=False, default=list)
    action = Column(JSON, nullable=False, default=dict)
    hit_count = Column(Integer, nullable=False, default=0)
    last_hit_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_matching_rules_enabled_priority', 'enabled', 'priority'),
    )


# ==================== SESSIONS ====================

class ReconciliationSessionDB(Base):
    __tablename__ = "recon_sessions"

    id = Column(String(36), primary_key=True, default=generate_id)
    account_id = Column(String(36), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    status = Column(
        _enum(SessionStatus, "recon_session_status_enum"),
        nullable=False,
        default=SessionStatus.IN_PROGRESS,
        index=True
    )
    config = Column(JSON, nullable=False, default=dict)
    statistics = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False, default="system")
    started_at = Column(DateTime(timezone=True), default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_recon_sessions_account_period', 'account_id', 'period_start', 'period_end'),
    )


# ==================== PIPELINE OUTPUTS ====================

class MatchDB(Base):
    __tablename__ = "recon_matches"

    id = Column(String(36), primary_key=True, default=generate_id)
    session_id = Column(String(36), ForeignKey("recon_sessions.id"), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    ledger_entry_id = Column(String(36), nullable=True, index=True)  # Null only for EXCLUDED
    match_type = Column(_enum(MatchType, "recon_match_type_enum"), nullable=False)
    confidence = Column(Float, nullable=False)
    criteria = Column(JSON, nullable=False, default=dict)
    status = Column(
        _enum(MatchStatus, "recon_match_status_enum"),
        nullable=False,
        default=MatchStatus.PENDING,
        index=True
    )
    rule_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(String(255), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            'uq_recon_matches_active_transaction',
            'session_id', 'transaction_id',
            unique=True,
            postgresql_where=text("status <> 'REJECTED'"),
            sqlite_where=text("status <> 'REJECTED'"),
        ),
        Index(
            'uq_recon_matches_claimed_ledger_entry',
            'ledger_entry_id',
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
    )


class ExceptionDB(Base):
    __tablename__ = "recon_exceptions"

    id = Column(String(36), primary_key=True, default=generate_id)
    session_id = Column(String(36), ForeignKey("recon_sessions.id"), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    exception_type = Column(_enum(ExceptionType, "recon_exception_type_enum"), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    candidate_ids = Column(JSON, nullable=False, default=list)
    resolution = Column(_enum(ExceptionResolution, "recon_exception_resolution_enum"), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolution_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_recon_exceptions_session_transaction', 'session_id', 'transaction_id'),
    )


# ==================== CONCURRENCY / AUDIT ====================

class RunLockDB(Base):
    """One active pipeline run per account. Rows older than the lock TTL are stale."""
    __tablename__ = "recon_run_locks"

    account_id = Column(String(36), primary_key=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    acquired_at = Column(DateTime(timezone=True), default=utc_now)
    owner_id = Column(String(36), nullable=True)


class ReconciliationAuditLogDB(Base):
    """Immutable audit trail of reconciliation events."""
    __tablename__ = "recon_audit_log"

    id = Column(String(36), primary_key=True, default=generate_id)
    event = Column(String(100), nullable=False, index=True)
    account_id = Column(String(36), nullable=True, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    match_id = Column(String(36), nullable=True)
    actor = Column(String(255), nullable=False, default="system")
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utc_now, index=True)
