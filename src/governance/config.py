"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite:///data/governance.db"
    database_echo: bool = False
    database_busy_timeout_ms: int = 5000  # SQLite lock wait
    database_connect_timeout: int = 10  # seconds, server databases
    database_pool_timeout: float = 30.0  # seconds to wait for a pooled connection

    # Redis (rate limit state)
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0
    redis_socket_connect_timeout: float = 5.0
    redis_max_connections: int = 10

    # Rate limiting
    rate_limit_window_ms: int = 60_000
    rate_limit_key_prefix: str = "ratelimit:"
    rate_limit_ttl_buffer_seconds: int = 10

    # Quotas
    quota_default_tier: str = "starter"
    quota_reset_sweep_interval: int = 60  # minutes

    # Scheduler
    scheduler_timezone: str = "UTC"

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience function for quick access
settings = get_settings()
