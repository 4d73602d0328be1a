"""
Precision Search - Configuration Management

Centralized configuration for environment variables and deployment settings.
This module ensures:
- No hardcoded secrets
- No hardcoded business thresholds (all overridable via environment)
- Environment-specific settings (dev/staging/prod)
- Secure defaults
"""

import os
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
    POSTGRES_DB: str = Field(default="precision_search")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary key for service-to-service calls (X-Internal-Api-Key)"
    )

    # ==================== STORAGE ====================
    STORAGE_REF_BASE: str = Field(
        default="local://uploads",
        description="Reference prefix returned for stored blobs"
    )
    STORAGE_LOCAL_DIR: str = Field(
        default="uploads",
        description="Local directory backing the blob store"
    )

    # ==================== MAILBOX API ====================
    MAIL_API_BASE_URL: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Base URL of the remote mailbox API"
    )
    MAIL_API_TIMEOUT: int = Field(
        default=30,
        description="Timeout in seconds for mailbox API calls"
    )
    MAIL_REQUEST_DELAY: float = Field(
        default=0.2,
        description="Minimum spacing in seconds between mailbox API calls"
    )
    MAIL_REQUEST_JITTER: float = Field(
        default=0.05,
        description="Upper bound of random jitter added to the request spacing"
    )
    MAIL_SEARCH_MAX_RESULTS: int = Field(
        default=20,
        description="Messages requested per mailbox search"
    )

    # ==================== EXTERNAL SERVICES ====================
    QUERY_SUGGESTION_URL: str = Field(
        default="",
        description="Query suggestion service URL (empty = deterministic mock)"
    )
    EMAIL_CLASSIFIER_URL: str = Field(
        default="",
        description="Email content classification service URL (empty = deterministic mock)"
    )
    EXTERNAL_SERVICE_TOKEN: str = Field(
        default="",
        description="Bearer token for the classification/query services"
    )
    EXTERNAL_SERVICE_TIMEOUT: int = Field(
        default=60,
        description="Timeout in seconds for classification/query services"
    )

    # ==================== PRECISION SEARCH ====================
    AMOUNT_TOLERANCE: float = Field(
        default=0.05,
        description="Relative amount deviation accepted by the file strategies (inclusive)"
    )
    DATE_WINDOW_DAYS: int = Field(
        default=30,
        description="Days either side of the transaction date accepted by the file strategies"
    )
    MAIL_INVOICE_CONFIDENCE: float = Field(
        default=0.7,
        description="Minimum classifier confidence to treat an email body as the invoice"
    )
    ATTACHMENT_MATCH_THRESHOLD: int = Field(
        default=60,
        description="Minimum candidate score before an email body is ingested as the invoice"
    )
    AUTO_CONNECT_THRESHOLD: int = Field(
        default=75,
        description="Score from which a candidate is labelled a strong match"
    )
    PRECISION_SEARCH_TIME_BUDGET_SECONDS: float = Field(
        default=240.0,
        description="Wall-clock budget per invocation before a continuation is persisted"
    )
    PRECISION_SEARCH_BATCH_SIZE: int = Field(
        default=20,
        description="Transactions fetched per page"
    )
    PRECISION_SEARCH_MAX_RETRIES: int = Field(
        default=3,
        description="Retries before a queue item is marked failed"
    )
    PRECISION_SEARCH_RETRY_DELAYS: str = Field(
        default="60,300,900",
        description="Comma-separated backoff delays in seconds per retry"
    )
    PRECISION_SEARCH_SWEEP_INTERVAL_SECONDS: int = Field(
        default=300,
        description="Interval of the periodic queue sweep"
    )
    PRECISION_SEARCH_INTER_TRANSACTION_DELAY: float = Field(
        default=0.05,
        description="Pause between transactions to spare the storage backend"
    )
    PRECISION_SEARCH_MAX_QUERIES: int = Field(
        default=3,
        description="Suggested queries used per email strategy"
    )
    PRECISION_SEARCH_MAX_MAILBOXES: int = Field(
        default=5,
        description="Connected mailboxes searched per run"
    )
    PRECISION_SEARCH_WORKER_ENABLED: bool = Field(
        default=True,
        description="Start the sweep and listener tasks with the API process"
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

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Precision Search API",
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
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def retry_delays(self) -> List[int]:
        """Parse PRECISION_SEARCH_RETRY_DELAYS into seconds per retry."""
        delays = [int(d.strip()) for d in self.PRECISION_SEARCH_RETRY_DELAYS.split(",") if d.strip()]
        return delays or [0]

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not self.INTERNAL_API_KEY and not os.environ.get("INTERNAL_API_KEYS"):
            errors.append("INTERNAL_API_KEY is required")

        if self.is_production:
            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        if not 0 < self.AMOUNT_TOLERANCE < 1:
            errors.append("AMOUNT_TOLERANCE must be between 0 and 1")

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

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


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
        ("QUERY_SUGGESTION_URL", settings.QUERY_SUGGESTION_URL, "Query suggestion uses deterministic mock"),
        ("EMAIL_CLASSIFIER_URL", settings.EMAIL_CLASSIFIER_URL, "Email classification uses deterministic mock"),
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
