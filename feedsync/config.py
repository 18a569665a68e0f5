"""Application configuration."""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/feedsync.db"

    # Feed transport
    feed_fetch_timeout_seconds: float = 60.0
    feed_test_timeout_seconds: float = 30.0
    feed_username: Optional[str] = None
    feed_password: Optional[str] = None

    # Sync behaviour
    max_consecutive_failures: int = 10
    adaptive_sync_enabled: bool = True
    detail_tablixes: List[str] = ["Tablix1", "Tablix2", "Tablix15", "Tablix16", "Tablix8", "Tablix10"]
    notification_queue_size: int = 100

    # Feed templates
    template_dir: str = "./data/templates"

    # Application
    log_level: str = "INFO"
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
