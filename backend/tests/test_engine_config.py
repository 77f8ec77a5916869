"""
Unit Tests for reconciliation configuration

Tests:
- Per-session config validation and overrides
- Auto-confirmation policy
- Application settings (pydantic-settings)

Run with: pytest backend/tests/test_engine_config.py -v
"""

from decimal import Decimal

import pytest

from config import Settings
from reconciliation.engine_config import ReconciliationConfig
from reconciliation.enums import MatchType
from reconciliation.errors import InvalidConfigurationError


class TestReconciliationConfig:
    """Test session configuration."""

    def test_defaults(self, config):
        assert config.amount_tolerance == Decimal("0.01")
        assert config.date_tolerance_days == 3
        assert config.fuzzy_threshold == 0.75
        assert config.auto_confirm_threshold == 0.95
        assert config.semantic_enabled is False
        assert config.validate() is config

    def test_validate_collects_errors(self):
        config = ReconciliationConfig(
            amount_tolerance=Decimal("-1"),
            date_tolerance_days=-2,
            auto_confirm_threshold=2.0,
            semantic_timeout_seconds=0,
        )

        with pytest.raises(InvalidConfigurationError) as exc_info:
            config.validate()

        errors = exc_info.value.details["errors"]
        assert "amount_tolerance must not be negative" in errors
        assert "date_tolerance_days must not be negative" in errors
        assert "auto_confirm_threshold must be between 0 and 1" in errors
        assert "semantic_timeout_seconds must be positive" in errors

    def test_semantic_candidate_limit(self):
        with pytest.raises(InvalidConfigurationError):
            ReconciliationConfig(semantic_max_candidates=11).validate()

    def test_with_overrides_ignores_none(self, config):
        assert config.with_overrides(fuzzy_threshold=None) is config

        updated = config.with_overrides(amount_tolerance="0.05", date_tolerance_days=5)
        assert updated.amount_tolerance == Decimal("0.05")
        assert updated.date_tolerance_days == 5
        assert config.date_tolerance_days == 3

    def test_dict_round_trip(self):
        config = ReconciliationConfig(
            amount_tolerance=Decimal("0.10"),
            auto_confirm_match_types=(MatchType.RULE, MatchType.EXACT),
        )

        restored = ReconciliationConfig.from_dict(config.to_dict())

        assert restored == config

    def test_from_dict_rejects_garbage(self):
        with pytest.raises(InvalidConfigurationError):
            ReconciliationConfig.from_dict({"amount_tolerance": "a lot"})

    def test_from_dict_unknown_match_type(self):
        with pytest.raises(InvalidConfigurationError):
            ReconciliationConfig.from_dict({"auto_confirm_match_types": ["GUESS"]})

    def test_from_dict_empty(self):
        assert ReconciliationConfig.from_dict(None) == ReconciliationConfig()


class TestAutoConfirmPolicy:
    """Test which matches are confirmed without review."""

    def test_threshold_is_inclusive(self, config):
        assert config.should_auto_confirm(MatchType.EXACT, 0.95) is True
        assert config.should_auto_confirm(MatchType.EXACT, 0.9499) is False

    def test_manual_is_never_auto_confirmed(self, config):
        assert config.should_auto_confirm(MatchType.MANUAL, 1.0) is False

    def test_fuzzy_can_be_excluded(self):
        config = ReconciliationConfig(auto_confirm_match_types=(MatchType.RULE, MatchType.EXACT))
        assert config.should_auto_confirm(MatchType.FUZZY, 0.99) is False
        assert config.should_auto_confirm(MatchType.RULE, 1.0) is True


class TestSettings:
    """Test environment-driven application settings."""

    def test_from_settings(self):
        settings = Settings(
            _env_file=None,
            RECON_AMOUNT_TOLERANCE=0.02,
            RECON_DATE_TOLERANCE_DAYS=5,
            RECON_SEMANTIC_ENABLED=True,
            SEMANTIC_MATCH_TIMEOUT_SECONDS=2.5,
        )

        config = ReconciliationConfig.from_settings(settings)

        assert config.amount_tolerance == Decimal("0.02")
        assert config.date_tolerance_days == 5
        assert config.semantic_enabled is True
        assert config.semantic_timeout_seconds == 2.5

    def test_internal_api_keys_merge(self):
        settings = Settings(_env_file=None, INTERNAL_API_KEYS="a, b", INTERNAL_API_KEY="c")
        assert settings.internal_api_keys == ["a", "b", "c"]

    def test_production_validation(self):
        settings = Settings(
            _env_file=None,
            ENVIRONMENT="production",
            DATABASE_URL="postgresql+asyncpg://u:p@localhost/recon",
            CORS_ORIGINS="*",
            RECON_SEMANTIC_ENABLED=True,
        )

        errors = settings.validate_production_config()

        assert "INTERNAL_API_KEY or INTERNAL_API_KEYS is required" in errors
        assert "CORS_ORIGINS cannot be '*' in production" in errors
        assert "DATABASE_URL cannot point to localhost in production" in errors
        assert "SEMANTIC_MATCH_URL is required when RECON_SEMANTIC_ENABLED is set" in errors

    def test_database_url_from_components(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(
            _env_file=None,
            POSTGRES_HOST="db",
            POSTGRES_USER="recon",
            POSTGRES_PASSWORD="secret",
        )
        assert settings.get_database_url() == "postgresql+asyncpg://recon:secret@db:5432/reconciliation"

    def test_missing_database_config(self, monkeypatch):
        for name in ("DATABASE_URL", "POSTGRES_HOST", "POSTGRES_USER", "POSTGRES_PASSWORD"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ValueError):
            Settings(_env_file=None).get_database_url()
