"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from geoalert.core.config import settings
    print(settings.STORE_BACKEND)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

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
    APP_NAME: str = "Geo Alert Dispatch"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Persistence ──
    STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite+aiosqlite:///./geoalert.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Geography ──
    DEFAULT_ALERT_RADIUS_KM: float = 50.0
    DEFAULT_USER_ALERT_RADIUS_KM: float = 50.0
    NEARBY_RESULT_LIMIT: int = 100

    # ── Notification ledger ──
    NOTIFICATION_MAX_ATTEMPTS: int = 3
    NOTIFICATION_RETENTION_DAYS: int = 30

    # ── Dispatch ──
    DISPATCH_CONCURRENCY: int = 10  # parallel (user, alert) deliveries per run
    DISPATCH_STALE_AFTER_SECONDS: int = 900
    DISPATCH_TIMEOUT_SECONDS: Optional[float] = None
    STORE_MAX_RETRIES: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 0.5

    # ── Notifiers ──
    PUSH_PROVIDER: str = "simulation"  # simulation | webpush | disabled
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_PUBLIC_KEY: Optional[str] = None
    VAPID_CLAIM_EMAIL: str = "mailto:alerts@geoalert.local"
    EMAIL_PROVIDER: str = "simulation"  # simulation | smtp | disabled
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    EMAIL_FROM: str = "alerts@geoalert.local"

    # ── Weather ingestion ──
    WEATHER_API_KEY: Optional[str] = None
    WEATHER_API_URL: str = "https://api.openweathermap.org/data/2.5"
    WEATHER_FETCH_TIMEOUT: int = 30  # seconds

    # ── Scheduler ──
    ENABLE_SCHEDULER: bool = False
    INGESTION_INTERVAL_SECONDS: int = 3600  # hourly fetch
    SWEEP_INTERVAL_SECONDS: int = 21600  # every 6 hours

    # ── Admin ──
    ADMIN_API_KEY: str = "dev-admin-key-change-in-production"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
