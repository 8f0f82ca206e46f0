"""Application configuration management."""
from pydantic import model_validator, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from sqlalchemy.engine.url import make_url, URL
from typing import Optional
import logging

SQLITE_LOCAL_URL = "sqlite+aiosqlite:///./wagerboard.db"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = SQLITE_LOCAL_URL
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Application
    environment: str = "development"

    # Upstream affiliate stats API
    upstream_api_url: str = "https://api.goated.com/user2/affiliate/referral-leaderboard"
    upstream_api_token: str = ""
    upstream_timeout_seconds: float = 60.0
    upstream_max_retries: int = 5  # Retries after the first attempt
    upstream_backoff_base_seconds: float = 1.0
    upstream_backoff_cap_seconds: float = 60.0
    upstream_freshness_minutes: int = 15  # Reuse last good snapshot within this window

    # Cache
    cache_default_ttl_seconds: int = 120
    cache_error_ttl_seconds: int = 30
    cache_stale_while_revalidate: bool = True

    # Background leaderboard sync
    leaderboard_sync_enabled: bool = True
    leaderboard_sync_interval_minutes: int = 10
    leaderboard_sync_startup_delay_seconds: int = 30

    # Profile reconciliation
    profile_insert_max_attempts: int = 3

    @field_validator("upstream_api_url", mode="before")
    @classmethod
    def normalize_upstream_url(cls, value):
        """Prepend https:// to scheme-less upstream URLs."""
        if value is None:
            return cls.model_fields["upstream_api_url"].default
        value = str(value).strip()
        if value and "://" not in value:
            value = f"https://{value}"
        return value

    @model_validator(mode="after")
    def validate_all_config(self):
        """Validate upstream and cache tuning and normalize Postgres URLs."""
        logger = logging.getLogger(__name__)

        if self.upstream_max_retries < 0:
            raise ValueError("upstream_max_retries must be zero or greater")

        if self.upstream_timeout_seconds <= 0:
            raise ValueError("upstream_timeout_seconds must be positive")

        if self.upstream_backoff_base_seconds <= 0 or self.upstream_backoff_cap_seconds <= 0:
            raise ValueError("upstream backoff base and cap must be positive")

        if self.upstream_backoff_cap_seconds < self.upstream_backoff_base_seconds:
            raise ValueError("upstream_backoff_cap_seconds must not be below the base delay")

        if self.cache_default_ttl_seconds < 1:
            raise ValueError("cache_default_ttl_seconds must be at least 1 second")

        if self.cache_error_ttl_seconds < 1 or self.cache_error_ttl_seconds >= self.cache_default_ttl_seconds:
            raise ValueError("cache_error_ttl_seconds must be at least 1 and shorter than cache_default_ttl_seconds")

        if self.leaderboard_sync_interval_minutes < 1:
            raise ValueError("leaderboard_sync_interval_minutes must be at least 1 minute")

        if self.profile_insert_max_attempts < 1:
            raise ValueError("profile_insert_max_attempts must be at least 1")

        # Database URL normalization
        url = self.database_url
        if not url:
            logger.warning("Empty DATABASE_URL, using SQLite fallback")
            self.database_url = SQLITE_LOCAL_URL
            return self

        parsed: Optional[URL] = None
        try:
            parsed = make_url(url)
        except Exception as e:
            logger.error(f"Failed to parse DATABASE_URL: {e}")
            self.database_url = SQLITE_LOCAL_URL
            return self

        drivername = parsed.drivername
        if drivername.startswith("postgres") and "+asyncpg" not in drivername:
            parsed = parsed.set(drivername="postgresql+asyncpg")
            logger.info(f"Driver normalized: {drivername} -> {parsed.drivername}")
        # Use render_as_string to properly re-encode special characters in password
        self.database_url = parsed.render_as_string(hide_password=False)

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
