"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development: SQLite storage,
no Redis, and every channel provider in simulation mode.

Usage:
    from backend.notifier.core.config import settings
    print(settings.DATABASE_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "ChoreMinder Notifier"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True

    # ── Database ──
    DATABASE_URL: str = "sqlite:///./notifier.db"
    DATABASE_POOL_SIZE: int = 10  # ignored for SQLite
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ── Redis (optional stats cache) ──
    REDIS_URL: Optional[str] = None
    STATS_CACHE_TTL: int = 30

    # ── Dispatcher ──
    DISPATCH_INTERVAL_SECONDS: float = 60.0
    DISPATCH_BATCH_LIMIT: int = 200
    DISPATCHER_AUTOSTART: bool = True
    CLAIM_LEASE_SECONDS: int = 300
    RULE_CATCHUP_LIMIT: int = 31  # occurrences materialized per rule per tick
    ENQUEUE_GRACE_SECONDS: int = 60
    SHUTDOWN_GRACE_SECONDS: float = 30.0  # wait for a running tick on shutdown

    # ── Worker pool ──
    WORKER_POOL_SIZE: int = 8
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # ── Retry ──
    DEFAULT_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 30.0
    RETRY_MAX_DELAY_SECONDS: float = 3600.0
    RETRY_JITTER: float = 0.2

    # ── Throttling (messages per recipient per channel per window) ──
    THROTTLE_WINDOW_SECONDS: int = 3600
    THROTTLE_LIMIT_WHATSAPP: int = 20
    THROTTLE_LIMIT_SMS: int = 10
    THROTTLE_LIMIT_EMAIL: int = 50

    # ── Routing ──
    DEFAULT_CHANNEL_ORDER: List[str] = ["whatsapp", "sms", "email"]

    # ── Delivery tracker ──
    EVENT_QUEUE_MAXSIZE: int = 10_000

    # ── Channel providers ──
    SMS_PROVIDER: str = "simulation"  # simulation | twilio
    WHATSAPP_PROVIDER: str = "simulation"  # simulation | twilio
    EMAIL_PROVIDER: str = "simulation"  # simulation | resend
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    TWILIO_WHATSAPP_NUMBER: Optional[str] = None
    TWILIO_STATUS_CALLBACK_URL: Optional[str] = None
    TWILIO_API_BASE_URL: str = "https://api.twilio.com/2010-04-01"
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_BASE_URL: str = "https://api.resend.com"
    EMAIL_FROM: str = "ChoreMinder <notifications@choreminder.app>"
    EMAIL_BLOCKLIST: List[str] = []  # full addresses or bare domains

    @field_validator("DEFAULT_CHANNEL_ORDER")
    @classmethod
    def _check_channel_order(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("DEFAULT_CHANNEL_ORDER must name at least one channel")
        if len(set(v)) != len(v):
            raise ValueError("DEFAULT_CHANNEL_ORDER must not repeat a channel")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def throttle_limits(self) -> Dict[str, int]:
        return {
            "whatsapp": self.THROTTLE_LIMIT_WHATSAPP,
            "sms": self.THROTTLE_LIMIT_SMS,
            "email": self.THROTTLE_LIMIT_EMAIL,
        }


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
