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

    # Logging / error tracking
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str = ""

    # Persistence -- empty values select the in-memory stores
    DATABASE_URL: str = ""
    REDIS_URL: str = ""

    # Platform A (product sourcing / order platform)
    PLATFORM_A_BASE_URL: str = ""
    PLATFORM_A_API_TOKEN: str = ""
    PLATFORM_A_WEBHOOK_SECRET: str = ""
    PLATFORM_A_SIGNATURE_HEADER: str = "X-Webhook-Signature"
    PLATFORM_A_RATE_LIMIT_PER_MINUTE: int = 60
    PLATFORM_A_BURST: int = 1

    # Platform B (point of sale / commerce platform)
    PLATFORM_B_BASE_URL: str = ""
    PLATFORM_B_API_TOKEN: str = ""
    PLATFORM_B_WEBHOOK_SECRET: str = ""
    PLATFORM_B_WEBHOOK_URL: str = ""  # Notification URL covered by B's signature
    PLATFORM_B_SIGNATURE_HEADER: str = "X-Signature-Sha256"
    PLATFORM_B_RATE_LIMIT_PER_MINUTE: int = 120
    PLATFORM_B_BURST: int = 2

    # Retry / timeouts for outbound calls
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0
    CALL_TIMEOUT_SECONDS: float = 30.0

    # Batch orchestration
    SYNC_BATCH_SIZE: int = 10
    SYNC_MAX_WORKERS: int = 5
    SYNC_FAILURE_TOLERANCE: float = 0.1
    CONFLICT_TIE_BREAK_SIDE: str = "platform_a"
    DEFAULT_CONFLICT_STRATEGY: str = "status_priority"

    # Webhooks
    WEBHOOK_DEDUP_TTL_SECONDS: int = 72 * 3600

    # Inventory
    INVENTORY_DEFAULT_LOCATION_ID: str = ""
    INVENTORY_BATCH_SIZE: int = 50
    INVENTORY_RECONCILE_PERCENT: float = 0.01
    INVENTORY_RECONCILE_MIN_UNITS: int = 5
    INVENTORY_RECONCILE_INTERVAL_MINUTES: int = 0  # 0 disables scheduled reconciliation


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
