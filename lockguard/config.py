from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Security
    secret_key: str = Field(...)  # Required, no insecure default

    # JWT
    jwt_algorithm: str = Field(default="HS256")
    jwt_access_token_expire_minutes: int = Field(default=60 * 24)  # 24 hours
    unlock_token_expire_minutes: int = Field(default=15)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./data/lockguard.db")

    # Alerts
    security_alert_webhook: Optional[str] = Field(default=None)
    webhook_timeout_seconds: float = Field(default=10.0)

    # Telegram (security team notifications)
    telegram_bot_token: Optional[str] = Field(default=None)
    security_team_telegram_id: Optional[str] = Field(default=None)

    # Sessions
    max_concurrent_sessions: int = Field(default=5)
    inactive_session_threshold_hours: int = Field(default=24)

    # Monitoring intervals (minutes)
    enable_session_monitoring: bool = Field(default=True)
    expired_sessions_interval_minutes: int = Field(default=15)
    inactive_sessions_interval_minutes: int = Field(default=60)
    security_scan_interval_minutes: int = Field(default=5)

    # Retention (days)
    audit_log_retention_days: int = Field(default=90)
    session_log_retention_days: int = Field(default=30)
    security_event_retention_days: int = Field(default=365)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
