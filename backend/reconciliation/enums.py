"""
Reconciliation Enums

Status and type vocabularies shared by the reconciliation engine:
- Session lifecycle
- Match types and statuses
- Exception taxonomy and resolutions
- Rule condition fields and operators
"""

from enum import Enum


class SessionStatus(str, Enum):
    """
    Lifecycle status of a reconciliation session.

    IN_PROGRESS is the only non-terminal state. All transitions are one-way.
    """
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


class TransactionStatus(str, Enum):
    """Reconciliation flag on a bank transaction (owned by this engine)."""
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"


class MatchType(str, Enum):
    """
    Strategy that produced a match.
    """
    RULE = "RULE"           # User-authored matching rule
    EXACT = "EXACT"         # Amount, date and reference equal
    FUZZY = "FUZZY"         # Weighted tolerance scoring
    SEMANTIC = "SEMANTIC"   # External semantic matcher
    MANUAL = "MANUAL"       # Matched or excluded by a user


AUTOMATIC_MATCH_TYPES = (
    MatchType.RULE,
    MatchType.EXACT,
    MatchType.FUZZY,
    MatchType.SEMANTIC,
)


class MatchStatus(str, Enum):
    """
    Status of a match record.
    """
    PENDING = "PENDING"         # Awaiting review
    CONFIRMED = "CONFIRMED"     # Auto-confirmed or confirmed by a user
    REJECTED = "REJECTED"       # Rejected by a user, ledger entry released
    EXCLUDED = "EXCLUDED"       # Transaction excluded from reconciliation

    @property
    def claims_ledger_entry(self) -> bool:
        return self in (MatchStatus.PENDING, MatchStatus.CONFIRMED)


class ExceptionType(str, Enum):
    """
    Why a transaction could not be placed, in priority order of detection.
    """
    MULTIPLE_MATCHES = "MULTIPLE_MATCHES"
    DATE_DISCREPANCY = "DATE_DISCREPANCY"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    NO_MATCH_FOUND = "NO_MATCH_FOUND"


class ExceptionResolution(str, Enum):
    """How a user resolved an exception."""
    MATCHED = "MATCHED"
    EXCLUDED = "EXCLUDED"
    CREATED_ENTRY = "CREATED_ENTRY"
    IGNORED = "IGNORED"


class RuleField(str, Enum):
    """Transaction fields a matching rule condition can inspect."""
    DESCRIPTION = "description"
    COUNTERPARTY = "counterparty"
    REFERENCE = "reference"
    AMOUNT = "amount"
    CURRENCY = "currency"


class RuleOperator(str, Enum):
    """Comparison operators for matching rule conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"


STRING_OPERATORS = frozenset({
    RuleOperator.EQUALS,
    RuleOperator.NOT_EQUALS,
    RuleOperator.CONTAINS,
    RuleOperator.NOT_CONTAINS,
    RuleOperator.STARTS_WITH,
    RuleOperator.ENDS_WITH,
    RuleOperator.MATCHES_REGEX,
})

NUMERIC_OPERATORS = frozenset({
    RuleOperator.EQUALS,
    RuleOperator.NOT_EQUALS,
    RuleOperator.GREATER_THAN,
    RuleOperator.LESS_THAN,
    RuleOperator.BETWEEN,
})
