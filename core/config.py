"""Runtime settings, read from SCHEDULER_* environment variables or .env."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=".env",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Storage
    database_url: str = "sqlite+aiosqlite:///scheduler.db"

    # Dispatcher
    tick_interval_seconds: float = 300.0
    enable_background_tick: bool = True
    max_schedules_per_tick: int = 100

    # Step pipeline
    max_concurrent_records: int = 5
    action_timeout_seconds: float = 120.0
    action_max_retries: int = 0
    action_retry_delay: float = 0.0      # seconds before first retry
    action_retry_backoff: float = 2.0    # multiply delay by this factor each attempt

    # Actions
    actions_file: str | None = None
    llm_model: str = "claude-sonnet-4-6"

    # External cron hook; when set, POST /dispatcher/tick requires "Bearer <token>"
    cron_token: str | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
