"""
Session statistics, computed from a session's persisted matches and
exceptions. Never updated incrementally.
"""

from collections import Counter
from typing import List

from reconciliation.enums import MatchStatus
from reconciliation.models import ExceptionRecord, Match, SessionStatistics


def compute_statistics(
    total_transactions: int,
    matches: List[Match],
    exceptions: List[ExceptionRecord],
    processing_duration_ms: int = 0,
) -> SessionStatistics:
    """
    Args:
        total_transactions: transactions in scope for the session period
        matches: every match recorded for the session (any status)
        exceptions: every exception recorded for the session
        processing_duration_ms: wall time of the run that triggered the computation
    """
    accepted = [
        m for m in matches
        if m.status in (MatchStatus.PENDING, MatchStatus.CONFIRMED)
    ]
    excluded = [m for m in matches if m.status == MatchStatus.EXCLUDED]
    open_exceptions = [e for e in exceptions if not e.is_resolved]

    by_match_type = Counter(m.match_type.value for m in accepted)
    by_exception_type = Counter(e.exception_type.value for e in open_exceptions)

    average_confidence = (
        round(sum(m.confidence for m in accepted) / len(accepted), 4) if accepted else 0.0
    )
    match_rate = (
        round(len(accepted) / total_transactions, 4) if total_transactions else 0.0
    )

    return SessionStatistics(
        total_transactions=total_transactions,
        matched_count=len(accepted),
        confirmed_count=sum(1 for m in accepted if m.status == MatchStatus.CONFIRMED),
        pending_count=sum(1 for m in accepted if m.status == MatchStatus.PENDING),
        excluded_count=len(excluded),
        exception_count=len(open_exceptions),
        by_match_type=dict(by_match_type),
        by_exception_type=dict(by_exception_type),
        average_confidence=average_confidence,
        match_rate=match_rate,
        processing_duration_ms=processing_duration_ms,
    )
