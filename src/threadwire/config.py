"""Configuration management for Threadwire"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Threadwire", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")

    # Storage
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for live session records")
    redis_max_connections: int = Field(default=50, description="Redis max connections")
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/threadwire.db",
        description="SQLAlchemy async URL for the audit log",
    )

    # Destination
    slack_bot_token: str = Field(default="", description="Slack bot token used to post thread messages")

    # Sessions
    projects_dir: str = Field(default="./projects", description="Root of per-user working directories")
    session_timeout_minutes: int = Field(default=60, gt=0, description="Inactivity window before a session is stopped")

    # Supervised process
    process_command: str = Field(default="claude", description="Binary launched for every session")
    process_cols: int = Field(default=120, description="Terminal columns")
    process_rows: int = Field(default=40, description="Terminal rows")
    output_debounce_seconds: float = Field(default=0.15, description="Quiet period before raw output is emitted")
    ready_delay_seconds: float = Field(default=2.0, description="Grace period before a process is considered ready")
    kill_timeout_seconds: float = Field(default=1.0, description="Forced-kill deadline after a graceful exit request")

    # Dispatch
    dispatch_debounce_seconds: float = Field(default=0.3, description="Quiet period before buffered output is delivered")
    dispatch_chunk_size: int = Field(default=3900, gt=0, description="Max characters per delivery unit")
    dispatch_max_updates: int = Field(
        default=5,
        description="Units delivered before in-place updates stop and new units are posted",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json or console)")

    @property
    def session_timeout_seconds(self) -> int:
        """Inactivity window in seconds, also used as the store TTL"""
        return self.session_timeout_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
