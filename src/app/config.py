"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Monitoring
    SENTRY_DSN: str = ""

    # Pipedrive API client
    PIPEDRIVE_TIMEOUT_SECONDS: float = 5.0
    PIPEDRIVE_MAX_RETRIES: int = 3  # Extra attempts on connect errors, timeouts, 429/5xx
    PIPEDRIVE_RETRY_DELAY_SECONDS: float = 1.0
    PIPEDRIVE_API_VERSION: str = "v1"

    # Webhooks
    CRM_WEBHOOK_PATH: str = "/webhooks/crm/sync"
    WEBHOOK_LOG_RETENTION_HOURS: float = 24
    WEBHOOK_LOG_DEFAULT_LIMIT: int = 100

    # Sync
    SYNC_INTERVAL_MINUTES: float = 5


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
