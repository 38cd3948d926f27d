"""Configuration settings for the Indexing Control Center."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Indexing Control Center configuration loaded from environment variables."""

    # Service settings
    service_name: str = "indexing-control"
    host: str = "0.0.0.0"
    port: int = 8310
    log_level: str = "INFO"
    cors_allow_origins: str = "*"

    # Supabase
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    store_timeout_seconds: float = 30.0

    # Edge Function indexers
    indexer_function: str = "index_video"
    personal_indexer_function: str = "index_personal_video"
    indexer_timeout_seconds: Optional[float] = None  # None = wait for the indexer

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @property
    def supabase_configured(self) -> bool:
        """Store access needs the project URL and the service role key."""
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def indexer_configured(self) -> bool:
        return self.supabase_configured

    @property
    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
