from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", env_prefix="HEALTHSYNC_")

    # Server database
    db_path: str = "/data/healthsync.db"

    # Device-local state
    local_db_path: str = "~/.healthsync/data.db"
    config_dir: str = "~/.healthsync"
    server_url: str = "http://localhost:8000"

    # Sync tuning
    sync_interval_seconds: float = 30.0
    shutdown_timeout_seconds: float = 5.0
    pull_limit: int = 1000
    push_batch_size: int = 1000
    http_timeout_seconds: float = 30.0
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
