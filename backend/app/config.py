"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Keystone MFA"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_STATEMENT_TIMEOUT_MS: int = 10000
    DB_POOL_RECYCLE_SECONDS: int = 3600

    # Redis (per-IP endpoint throttling)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    MFA_PENDING_TOKEN_EXPIRE_MINUTES: int = 30  # Long enough to finish a first-time setup
    MFA_VERIFIED_TOKEN_EXPIRE_MINUTES: int = 5
    MASTER_ENCRYPTION_KEY: str
    ENCRYPTION_CURRENT_VERSION: int = 1
    ENCRYPTION_KEY_V1: Optional[str] = None

    # Multi-factor authentication
    MFA_ISSUER_NAME: str = "Keystone"
    MFA_SETUP_SESSION_TTL_MINUTES: int = 30
    MFA_EMAIL_OTP_TTL_MINUTES: int = 10
    MFA_TOTP_VALID_WINDOW: int = 1  # +/- 30 second steps tolerated for clock drift
    MFA_MAX_FAILED_ATTEMPTS: int = 5
    MFA_FAILED_ATTEMPT_WINDOW_MINUTES: int = 15
    MFA_BACKUP_CODE_COUNT: int = 10
    MFA_AUDIT_RETENTION_DAYS: int = 30

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    MFA_CLEANUP_INTERVAL_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # SECURITY: The validator will REJECT "*" in production
    ALLOWED_HOSTS: list[str] = ["*"]

    # CSRF bypass, only ever set by the pytest suite
    SKIP_CSRF_IN_TESTS: bool = False

    # Monitoring
    SENTRY_DSN: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # 'text' or 'json' (json for production)
    ENVIRONMENT: str = "development"  # development, staging, production

    # Email (SMTP); emails are silently skipped when SMTP_HOST is unset
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: str = "noreply@keystone.local"
    SMTP_FROM_NAME: str = "Keystone"
    SMTP_USE_TLS: bool = True  # Use STARTTLS (port 587). Set False for SSL on port 465.

    # Prometheus Metrics
    METRICS_ENABLED: bool = True
    METRICS_ADMIN_PORT: int = 9090
    METRICS_USERNAME: str = "admin"
    METRICS_PASSWORD: str = "metrics_admin"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is not using insecure defaults in production."""
        insecure_defaults = [
            "dev-secret-key-change-in-production",
            "your-secret-key-here",
            "change-me",
            "secret",
        ]

        # Read ENVIRONMENT directly (Settings is not fully initialized yet)
        import os

        environment = os.getenv("ENVIRONMENT", "development")

        if environment == "production" and (v in insecure_defaults or len(v) < 32):
            raise ValueError(
                "Insecure SECRET_KEY detected in production! "
                "Generate a secure key with: openssl rand -hex 32"
            )

        return v

    @field_validator("ALLOWED_HOSTS")
    @classmethod
    def validate_allowed_hosts(cls, v: list[str]) -> list[str]:
        """Validate ALLOWED_HOSTS is configured for production."""
        import os

        environment = os.getenv("ENVIRONMENT", "development")

        if environment == "production" and "*" in v:
            raise ValueError(
                "ALLOWED_HOSTS=['*'] is insecure in production! "
                "Set specific domains like ['mfa.example.com']"
            )

        return v

    @field_validator(
        "MFA_SETUP_SESSION_TTL_MINUTES",
        "MFA_EMAIL_OTP_TTL_MINUTES",
        "MFA_MAX_FAILED_ATTEMPTS",
        "MFA_FAILED_ATTEMPT_WINDOW_MINUTES",
        "MFA_BACKUP_CODE_COUNT",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """MFA timeouts and limits must be strictly positive."""
        if v <= 0:
            raise ValueError("MFA durations and limits must be positive integers")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
