"""
Configuration for the genguard generation core.
"""

from enum import Enum
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DAILY_BUDGET_USD = 100.0


class FailMode(str, Enum):
    """Behavior of a guard when the backing store cannot be reached."""

    CLOSED = "closed"  # Deny (protects spend)
    OPEN = "open"  # Allow (risky, non-production only)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="GENGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    env: str = "development"
    debug: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: str = ""  # Empty = auth disabled on admin endpoints (dev mode)

    # Redis (Backing store)
    redis_url: str = "redis://localhost:6379"
    redis_connect_timeout: float = 5.0
    redis_reprobe_interval_seconds: float = 30.0

    # Budget Circuit Breaker
    daily_budget_usd: float = DEFAULT_DAILY_BUDGET_USD
    budget_fail_mode: FailMode = FailMode.CLOSED
    budget_counter_ttl_seconds: int = 172800  # 48h, survives timezone edges

    # Rate Limiting tiers
    anon_hourly_limit: int = 5
    anon_daily_limit: int = 20
    auth_hourly_limit: int = 20
    auth_daily_limit: int = 100
    cooldown_seconds: int = 10
    fallback_sweep_interval_seconds: float = 60.0

    # Locks
    generation_lock_ttl_seconds: int = 60
    refresh_lock_ttl_seconds: int = 600  # Longer than a sync, self-heals on crash
    lock_fail_mode: FailMode = FailMode.CLOSED
    lock_retry_attempts: int = 2
    lock_retry_delay_seconds: float = 2.0

    # Generation
    generation_timeout_seconds: float = 45.0

    # Content TTLs (seconds) per period bucket
    content_ttl_daily: int = 172800  # 48 hours
    content_ttl_weekly: int = 864000  # 10 days
    content_ttl_monthly: int = 3456000  # 40 days
    content_ttl_yearly: int = 34560000  # 400 days
    content_ttl_default: int = 86400  # 24 hours

    # Pre-warm
    prewarm_window_hours: int = 3
    prewarm_max_identities: int = 500

    @field_validator("daily_budget_usd")
    @classmethod
    def _positive_budget(cls, v: float) -> float:
        # Non-positive ceilings are treated as unset
        return v if v > 0 else DEFAULT_DAILY_BUDGET_USD

    def content_ttl_for(self, bucket: str) -> int:
        """TTL for cached content in a period bucket ("daily", "weekly", ...)."""
        return {
            "daily": self.content_ttl_daily,
            "weekly": self.content_ttl_weekly,
            "monthly": self.content_ttl_monthly,
            "yearly": self.content_ttl_yearly,
        }.get(bucket, self.content_ttl_default)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
