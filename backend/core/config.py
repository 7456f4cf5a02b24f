"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///./followup.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Follow-up wiring
    # Dispatch mode: 'outbox' (SQL outbox table) or 'noop' (dry run)
    FOLLOWUP_DISPATCH_MODE: str = "outbox"
    # Business calendar service; empty means every instant is permitted
    FOLLOWUP_CALENDAR_URL: str = ""
    FOLLOWUP_CALENDAR_TIMEOUT_MS: int = 3000
    # Create follow-up tables on startup (local/dev databases)
    FOLLOWUP_CREATE_SCHEMA: bool = False
    # Engine tuning (batch sizes, cooldowns, worker count) is read by
    # FollowUpConfig.from_env() from the same FOLLOWUP_ prefix.


# Global settings instance
settings = Settings()
