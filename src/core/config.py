"""Application configuration using pydantic-settings."""
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Managed backend - shared with the web frontend (NEXT_PUBLIC_ prefix)
    supabase_url: str = Field(
        default="http://localhost:54321",
        validation_alias="NEXT_PUBLIC_SUPABASE_URL",
    )
    supabase_anon_key: str = Field(default="", validation_alias="NEXT_PUBLIC_SUPABASE_ANON_KEY")

    # OAuth
    oauth_provider: str = Field(default="google", validation_alias="OAUTH_PROVIDER")
    oauth_redirect_url: str = Field(
        default="http://localhost:3000",
        validation_alias="OAUTH_REDIRECT_URL",
    )

    # Redis - change-feed transport
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=10, validation_alias="REDIS_POOL_SIZE")
    redis_health_check_interval: int = Field(
        default=30, validation_alias="REDIS_HEALTH_CHECK_INTERVAL",
    )

    # Storage
    bookmarks_table: str = Field(default="bookmarks", validation_alias="BOOKMARKS_TABLE")
    bookmark_fetch_limit: int = Field(default=100, validation_alias="BOOKMARK_FETCH_LIMIT")
    request_timeout: float = Field(default=30.0, validation_alias="REQUEST_TIMEOUT")

    # Field length limits
    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")
    max_url_length: int = Field(default=2048, validation_alias="MAX_URL_LENGTH")

    # Sync behavior
    optimistic_timeout_seconds: float = Field(
        default=15.0, validation_alias="OPTIMISTIC_TIMEOUT_SECONDS",
    )
    realtime_retry_base_delay: float = Field(
        default=0.5, validation_alias="REALTIME_RETRY_BASE_DELAY",
    )
    realtime_retry_max_delay: float = Field(
        default=30.0, validation_alias="REALTIME_RETRY_MAX_DELAY",
    )
    realtime_max_retries: int = Field(default=5, validation_alias="REALTIME_MAX_RETRIES")

    @model_validator(mode="after")
    def validate_sync_timing(self) -> "Settings":
        """Reject timing values that would make the sync loop misbehave."""
        if self.optimistic_timeout_seconds <= 0:
            raise ValueError("OPTIMISTIC_TIMEOUT_SECONDS must be positive")
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive")
        if self.bookmark_fetch_limit <= 0:
            raise ValueError("BOOKMARK_FETCH_LIMIT must be positive")
        if self.realtime_retry_max_delay < self.realtime_retry_base_delay:
            raise ValueError(
                "REALTIME_RETRY_MAX_DELAY must be greater than or equal to "
                "REALTIME_RETRY_BASE_DELAY",
            )
        return self

    @property
    def auth_url(self) -> str:
        """Get the GoTrue auth API base URL."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @property
    def rest_url(self) -> str:
        """Get the PostgREST API base URL."""
        return f"{self.supabase_url.rstrip('/')}/rest/v1"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
