"""Configuration module using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: str | None = None  # Shared bearer token required in front of identity headers

    # Database (quota ledger)
    database_url: str = "sqlite:///data/search_gateway.db"
    quota_backend: str = "memory"  # "memory" or "sql"

    # Analytics sink
    analytics_db_path: str = "data/search_analytics.db"
    analytics_retention_days: int = 90
    analytics_prune_interval_minutes: int = 1440  # 0 disables the pruning job

    # Cache
    cache_backend: str = "memory"  # Shared layer: "memory" or "redis"
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "search_gateway:"
    cache_ttl_seconds: int = 300  # Shared layer TTL for search results
    memory_cache_ttl_seconds: int = 60  # Fast layer TTL (capped by cache_ttl_seconds)
    memory_cache_max_size: int = 1000

    # Rate limiting
    counter_backend: str = "memory"  # "memory" or "redis"
    user_rate_limit: int = 100
    user_rate_window_seconds: int = 60
    org_rate_limit: int = 1000
    org_rate_window_seconds: int = 60
    rate_limit_fail_open: bool = True

    # Quota
    default_plan_tier: str = "free"
    bill_cache_hits: bool = True

    # Search engine collaborator
    search_engine_url: str | None = None  # Remote ranking service; None = in-process engine
    search_timeout_seconds: float = 10.0
    max_query_length: int = 500

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        if self.database_url.startswith("sqlite:///"):
            db_path = Path(self.database_url.replace("sqlite:///", ""))
            return db_path.parent
        return Path("data")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
