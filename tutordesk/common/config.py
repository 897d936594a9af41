"""Environment-driven settings, loaded once per process.

Per-teacher behaviour (reminder cadence, summaries, auto-confirm) lives on the
teacher row; only process-wide knobs are configured here.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    # process
    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # scheduling
    scheduling_url: str = "http://scheduling:8001"
    default_timezone: str = "UTC"
    lesson_fetch_timeout_seconds: float = 15.0
    recurrence_horizon_days: int = 365
    recurrence_max_occurrences: int = 500

    # ledger
    auto_confirm_grace_minutes: int = 5
    auto_confirm_interval_seconds: float = 300

    # notifications
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    telegram_webapp_url: str = ""
    gateway_timeout_seconds: float = 10.0
    payment_reminder_cooldown_minutes: int = 120
    payment_reminder_interval_seconds: float = 900
    # automatic reminders pause from this hour until `quiet_hours_resume`, teacher-local
    quiet_hours_start: int = 22
    quiet_hours_resume: str = "09:30"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
