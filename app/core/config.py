from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/review_sync.db"

    # Google OAuth client
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"

    # Business Profile API
    gbp_api_base: str = "https://mybusiness.googleapis.com/v4"

    # Token lifecycle
    token_refresh_margin_seconds: int = 60
    reauth_signal_ttl_hours: int = 6

    # Sync tuning
    sync_max_workers: int = 4
    sync_deadline_seconds: float | None = None
    sync_page_size: int = 50
    sync_max_pages: int = 20
    sync_max_retries: int = 3

    # Optional settings
    tz: str = "Europe/Paris"
    sync_hour: int = 5
    sync_minute: int = 30
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
