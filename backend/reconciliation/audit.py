"""
Reconciliation Audit Trail

Lifecycle events are written to the structured log and persisted as audit
rows through the repository. Audit persistence failures are logged and never
abort the operation being audited.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    SESSION_STARTED = "reconciliation.session_started"
    SESSION_COMPLETED = "reconciliation.session_completed"
    SESSION_CANCELLED = "reconciliation.session_cancelled"
    SESSION_FAILED = "reconciliation.session_failed"
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    MATCH_CREATED = "reconciliation.match_created"
    MATCH_CONFIRMED = "reconciliation.match_confirmed"
    MATCH_REJECTED = "reconciliation.match_rejected"
    TRANSACTION_EXCLUDED = "reconciliation.transaction_excluded"
    EXCEPTION_CREATED = "reconciliation.exception_created"
    EXCEPTION_UPDATED = "reconciliation.exception_updated"
    EXCEPTION_RESOLVED = "reconciliation.exception_resolved"
    RULE_HIT = "reconciliation.rule_hit"


def log_reconciliation_event(
    event_type: str,
    account_id: str,
    details: Dict[str, Any],
    session_id: Optional[str] = None,
    match_id: Optional[str] = None,
    actor: str = "system"
) -> Dict[str, Any]:
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "account_id": account_id,
        "session_id": session_id,
        "match_id": match_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)
    return log_entry


async def record_reconciliation_event(
    repository,
    event_type: str,
    account_id: str,
    details: Dict[str, Any],
    session_id: Optional[str] = None,
    match_id: Optional[str] = None,
    actor: str = "system"
) -> None:
    """Log the event and store it in the reconciliation audit log."""
    log_entry = log_reconciliation_event(
        event_type,
        account_id,
        details,
        session_id=session_id,
        match_id=match_id,
        actor=actor,
    )

    try:
        await repository.save_audit_entry(log_entry)
    except Exception as e:
        logger.warning(f"Failed to store audit log: {e}")
