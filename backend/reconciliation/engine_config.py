"""
Reconciliation Engine Configuration

Per-session tolerances and thresholds. Defaults come from application
settings (RECON_* environment variables) and can be overridden per session.

Auto-confirmation applies to every automatic match type by default. Whether
fuzzy matches should ever auto-confirm is pending product review, so the set
of auto-confirmable types is configurable.
"""

from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from reconciliation.enums import MatchType, AUTOMATIC_MATCH_TYPES
from reconciliation.errors import InvalidConfigurationError


DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")
DEFAULT_DATE_TOLERANCE_DAYS = 3
DEFAULT_FUZZY_THRESHOLD = 0.75
DEFAULT_AUTO_CONFIRM_THRESHOLD = 0.95
DEFAULT_SEMANTIC_THRESHOLD = 0.85
DEFAULT_SEMANTIC_TIMEOUT_SECONDS = 5.0
DEFAULT_SEMANTIC_MAX_CANDIDATES = 10


@dataclass(frozen=True)
class ReconciliationConfig:
    """
    Configuration for a reconciliation session.
    """
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE
    date_tolerance_days: int = DEFAULT_DATE_TOLERANCE_DAYS
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD
    auto_confirm_threshold: float = DEFAULT_AUTO_CONFIRM_THRESHOLD
    auto_confirm_match_types: Tuple[MatchType, ...] = AUTOMATIC_MATCH_TYPES
    semantic_enabled: bool = False
    semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD
    semantic_timeout_seconds: float = DEFAULT_SEMANTIC_TIMEOUT_SECONDS
    semantic_max_candidates: int = DEFAULT_SEMANTIC_MAX_CANDIDATES

    def validate(self) -> "ReconciliationConfig":
        """Raise InvalidConfigurationError if any value is out of range."""
        errors = []

        if self.amount_tolerance < 0:
            errors.append("amount_tolerance must not be negative")
        if self.amount_tolerance >= 1:
            errors.append("amount_tolerance must be below 1.0 (the fuzzy exclusion bound)")
        if self.date_tolerance_days < 0:
            errors.append("date_tolerance_days must not be negative")

        for name in ("fuzzy_threshold", "auto_confirm_threshold", "semantic_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be between 0 and 1")

        if self.semantic_timeout_seconds <= 0:
            errors.append("semantic_timeout_seconds must be positive")
        if not 1 <= self.semantic_max_candidates <= DEFAULT_SEMANTIC_MAX_CANDIDATES:
            errors.append(
                f"semantic_max_candidates must be between 1 and {DEFAULT_SEMANTIC_MAX_CANDIDATES}"
            )

        if errors:
            raise InvalidConfigurationError(
                "Invalid reconciliation configuration",
                details={"errors": errors}
            )
        return self

    def should_auto_confirm(self, match_type: MatchType, confidence: float) -> bool:
        return (
            match_type in self.auto_confirm_match_types
            and confidence >= self.auto_confirm_threshold
        )

    def with_overrides(self, **overrides: Any) -> "ReconciliationConfig":
        """Return a copy with the given non-None overrides applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        if not clean:
            return self
        return ReconciliationConfig.from_dict({**self.to_dict(), **clean})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_tolerance": str(self.amount_tolerance),
            "date_tolerance_days": self.date_tolerance_days,
            "fuzzy_threshold": self.fuzzy_threshold,
            "auto_confirm_threshold": self.auto_confirm_threshold,
            "auto_confirm_match_types": [t.value for t in self.auto_confirm_match_types],
            "semantic_enabled": self.semantic_enabled,
            "semantic_threshold": self.semantic_threshold,
            "semantic_timeout_seconds": self.semantic_timeout_seconds,
            "semantic_max_candidates": self.semantic_max_candidates,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReconciliationConfig":
        """Build a config from a persisted/serialized dict. Unknown keys are ignored."""
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}

        try:
            if "amount_tolerance" in values:
                values["amount_tolerance"] = Decimal(str(values["amount_tolerance"]))
            if "auto_confirm_match_types" in values:
                values["auto_confirm_match_types"] = tuple(
                    MatchType(t) for t in values["auto_confirm_match_types"]
                )
            for name in ("fuzzy_threshold", "auto_confirm_threshold",
                         "semantic_threshold", "semantic_timeout_seconds"):
                if name in values:
                    values[name] = float(values[name])
            for name in ("date_tolerance_days", "semantic_max_candidates"):
                if name in values:
                    values[name] = int(values[name])
        except (InvalidOperation, ValueError, TypeError) as e:
            raise InvalidConfigurationError(
                f"Invalid reconciliation configuration: {e}",
                details={"config": {k: str(v) for k, v in data.items()}}
            )

        return cls(**values)

    @classmethod
    def from_settings(cls, settings) -> "ReconciliationConfig":
        """Build the default session configuration from application settings."""
        return cls(
            amount_tolerance=Decimal(str(settings.RECON_AMOUNT_TOLERANCE)),
            date_tolerance_days=settings.RECON_DATE_TOLERANCE_DAYS,
            fuzzy_threshold=settings.RECON_FUZZY_THRESHOLD,
            auto_confirm_threshold=settings.RECON_AUTO_CONFIRM_THRESHOLD,
            semantic_enabled=settings.RECON_SEMANTIC_ENABLED,
            semantic_threshold=settings.RECON_SEMANTIC_THRESHOLD,
            semantic_timeout_seconds=settings.SEMANTIC_MATCH_TIMEOUT_SECONDS,
            semantic_max_candidates=settings.RECON_SEMANTIC_MAX_CANDIDATES,
        )
