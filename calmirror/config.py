"""Application configuration management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calmirror.db"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Google OAuth client used for token refresh
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    # Runtime features
    enable_webhooks: bool = True
    enable_scheduler: bool = True

    # Rate limiting
    webhook_rate_limit_per_minute: int = 120

    # Sync settings
    sync_lookback_months: int = 24
    events_page_size: int = 2500
    sync_interval_minutes: int = 15
    watch_ttl_days: int = 6
    watch_renewal_hours: int = 6
    watch_renewal_threshold_hours: int = 24

    # Activity execution
    activity_max_attempts: int = 3
    activity_retry_initial_interval_seconds: float = 1.0
    activity_retry_backoff_coefficient: float = 2.0
    activity_retry_max_interval_seconds: float = 100.0
    activity_timeout_seconds: float = 300.0
    workflow_timeout_seconds: float = 3600.0

    # Retention settings (days)
    workflow_run_retention_days: int = 14
    deleted_watch_retention_days: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def webhook_callback_url() -> str:
    """Public address Google should deliver watch notifications to."""
    return f"{get_settings().public_url.rstrip('/')}/api/webhooks/google-calendar"
