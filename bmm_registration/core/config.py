# type: ignore
# pyright: reportMissingImports=false, reportGeneralTypeErrors=false
"""
Core configuration, read from the environment.
Single source of truth for every tunable parameter.
"""

import os


class Settings:
    """Application settings loaded from environment variables."""

    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "bmm-registration")
    SERVICE_VERSION: str = os.getenv("SERVICE_VERSION", "1.0.0")
    SERVICE_PORT: int = int(os.getenv("SERVICE_PORT", "8010"))

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite://")
    POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "5"))
    POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "300"))

    VENUES_CONFIG_FILE: str = os.getenv("VENUES_CONFIG_FILE", "")

    # Notification delivery
    DEFAULT_EMAIL_PROVIDER: str = os.getenv("DEFAULT_EMAIL_PROVIDER", "log")
    EMAIL_SENDER: str = os.getenv("EMAIL_SENDER", "bmm@etu.nz")
    MAILJET_API_URL: str = os.getenv(
        "MAILJET_API_URL", "https://api.mailjet.com/v3.1/send"
    )
    MAILJET_API_KEY: str = os.getenv("MAILJET_API_KEY", "")
    MAILJET_API_SECRET: str = os.getenv("MAILJET_API_SECRET", "")
    NOTIFICATION_TIMEOUT: float = float(os.getenv("NOTIFICATION_TIMEOUT", "5.0"))
    NOTIFICATION_MAX_ATTEMPTS: int = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
    NOTIFICATION_RETRY_BACKOFF: float = float(
        os.getenv("NOTIFICATION_RETRY_BACKOFF", "0.5")
    )
    DISPATCH_CONCURRENCY: int = int(os.getenv("DISPATCH_CONCURRENCY", "8"))
    # Placeholder addresses minted by the membership sync: member-123@temp-email.etu.nz
    TEMP_EMAIL_PATTERN: str = os.getenv(
        "TEMP_EMAIL_PATTERN", r"@temp-email\.[A-Za-z0-9.-]+$"
    )
    TICKET_BASE_URL: str = os.getenv(
        "TICKET_BASE_URL", "https://events.etu.nz/ticket"
    )
    REGISTRATION_BASE_URL: str = os.getenv(
        "REGISTRATION_BASE_URL", "https://events.etu.nz/bmm/register"
    )

    # Background jobs
    JOB_WORKERS: int = int(os.getenv("JOB_WORKERS", "4"))
    ASSIGN_REGION_WORKERS: int = int(os.getenv("ASSIGN_REGION_WORKERS", "3"))
    MAX_JOB_HISTORY: int = int(os.getenv("MAX_JOB_HISTORY", "500"))

    DEFAULT_HISTORY_LIMIT: int = int(os.getenv("DEFAULT_HISTORY_LIMIT", "100"))
    MAX_HISTORY_SIZE: int = int(os.getenv("MAX_HISTORY_SIZE", "1000"))

    CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
