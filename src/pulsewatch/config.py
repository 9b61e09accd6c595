from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    app_name: str = "PulseWatch"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./pulsewatch.db"

    # JWT
    secret_key: str = "change-me-in-production-use-a-real-secret-key"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24  # 24 hours

    # Email (SMTP)
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = "alerts@pulsewatch.app"
    smtp_use_tls: bool = True

    # SMS (Twilio REST API)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # Telegram bot used when a contact does not carry its own token
    telegram_bot_token: str = ""

    # Outbound HTTP (chat webhooks, generic webhooks)
    notification_timeout: int = 10
    webhook_user_agent: str = "PulseWatch/1.0"

    # Checks
    check_region: str = "us-east"
    check_retry_delay_seconds: float = 2.0
    slow_response_ms: int = 5000
    critical_response_ms: int = 10000
    ssl_warning_days: int = 7

    # Periodic tasks
    run_scheduler: bool = True
    scheduler_tick_seconds: int = 60
    stats_recalc_seconds: int = 3600
    cleanup_cron: str = "0 2 * * *"  # daily at 02:00
    retention_days: int = 90

    # Job queue
    run_workers: bool = True
    worker_concurrency: int = 10
    queue_poll_interval: float = 1.0
    queue_keep_completed: int = 10
    queue_keep_failed: int = 5
    queue_retry_backoff_seconds: float = 5.0
    notification_max_attempts: int = 3

    # Base URL
    base_url: str = "http://localhost:8000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
