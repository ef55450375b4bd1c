"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Academy Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str

    # CORS
    CORS_ORIGINS: list[str] = []

    # PortOne payment gateway
    PORTONE_API_BASE_URL: str = "https://api.portone.io"
    PORTONE_API_SECRET: str = ""
    PORTONE_STORE_ID: Optional[str] = None
    PORTONE_WEBHOOK_SECRET: str = ""  # Empty disables webhook processing
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Webhook verification
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Billing
    DEFAULT_CURRENCY: str = "KRW"
    DEFAULT_LOCALE: str = "en"

    # Limit enforcement
    # When true, growth operations hold a per-tenant lock around check-then-mutate
    STRICT_LIMIT_ENFORCEMENT: bool = False
    TENANT_LOCK_TTL_SECONDS: int = 10
    # KV_STORE_BACKEND: memory (single process only) or redis
    KV_STORE_BACKEND: str = "memory"

    # Alerting
    SLACK_WEBHOOK_URL: Optional[str] = None
    ALERT_COOLDOWN_SECONDS: int = 300

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
