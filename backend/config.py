"""
Reconciliation Engine - Configuration Management

Centralized configuration for environment variables, matching defaults and
deployment settings. This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- Matching tolerances and thresholds tunable without a deploy
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy connection URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Single internal API key for service-to-service calls"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of accepted internal API keys"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== RECONCILIATION ====================
    RECON_AMOUNT_TOLERANCE: float = Field(
        default=0.01,
        description="Amount delta treated as an exact amount match in fuzzy scoring"
    )
    RECON_DATE_TOLERANCE_DAYS: int = Field(
        default=3,
        description="Days at which the fuzzy date score reaches zero"
    )
    RECON_FUZZY_THRESHOLD: float = Field(
        default=0.75,
        description="Minimum fuzzy score for a candidate to be accepted"
    )
    RECON_AUTO_CONFIRM_THRESHOLD: float = Field(
        default=0.95,
        description="Confidence at or above which automatic matches are confirmed"
    )
    RECON_SEMANTIC_ENABLED: bool = Field(
        default=False,
        description="Enable the semantic matching tier"
    )
    RECON_SEMANTIC_THRESHOLD: float = Field(
        default=0.85,
        description="Minimum semantic confidence for a proposal to be accepted"
    )
    RECON_SEMANTIC_MAX_CANDIDATES: int = Field(
        default=10,
        description="Candidates offered to the semantic matcher per transaction"
    )
    RECON_RUN_LOCK_TTL_SECONDS: int = Field(
        default=3600,
        description="Age after which a run lock left by a dead process is taken over"
    )

    # ==================== SEMANTIC MATCHER ====================
    SEMANTIC_MATCH_URL: str = Field(
        default="",
        description="Base URL of the semantic matching service"
    )
    SEMANTIC_MATCH_API_KEY: str = Field(
        default="",
        description="Bearer token for the semantic matching service"
    )
    SEMANTIC_MATCH_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Per-call timeout for the semantic matcher"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit JSON-formatted logs"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Transaction Reconciliation Engine",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list. Development adds localhost origins.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_api_keys(self) -> List[str]:
        """All accepted internal API keys."""
        keys = [k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip()]
        if self.INTERNAL_API_KEY and self.INTERNAL_API_KEY not in keys:
            keys.append(self.INTERNAL_API_KEY)
        return keys

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not (self.POSTGRES_HOST and self.POSTGRES_USER):
            errors.append("DATABASE_URL is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY or INTERNAL_API_KEYS is required")

        if self.RECON_SEMANTIC_ENABLED and not self.SEMANTIC_MATCH_URL:
            errors.append("SEMANTIC_MATCH_URL is required when RECON_SEMANTIC_ENABLED is set")

        for name in ("RECON_FUZZY_THRESHOLD", "RECON_AUTO_CONFIRM_THRESHOLD", "RECON_SEMANTIC_THRESHOLD"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be between 0 and 1")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")
    logger.info(f"Semantic matching: {'enabled' if settings.RECON_SEMANTIC_ENABLED else 'disabled'}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-Internal-Api-Key",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("SEMANTIC_MATCH_URL", settings.SEMANTIC_MATCH_URL, "Semantic matching unavailable"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "⚠ Not set"
        else:
            status["variables"][name] = "✓ Set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
