"""
Core models for the genguard generation core.

- RateLimitResult: outcome of a single check-and-consume
- BudgetCheckResult / BudgetStatus: daily spend view
- PeriodKeys: timezone-local calendar buckets
- ContentEntry: a cached generation result with its validity tags
- StalenessMarker: last background sync for an identity
- Usage / GenerationRequest / GenerationOutcome: orchestrator I/O
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from ulid import ULID


def generate_token() -> str:
    """Generate a sortable unique token."""
    return str(ULID())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Backend(str, Enum):
    """Where a rate-limit counter lives."""

    REDIS = "redis"
    MEMORY = "memory"


class RateLimitResult(BaseModel):
    allowed: bool
    used: int
    remaining: int
    limit: int
    reset_at: float  # Epoch seconds
    backend: Backend


class LimitUsage(BaseModel):
    used: int = 0
    limit: int


class TieredRateLimitResult(BaseModel):
    """Combined cooldown + hourly + daily verdict for one identity."""

    allowed: bool
    reason: str | None = None  # "cooldown" | "hourly" | "daily"
    retry_after_seconds: int | None = None
    hourly: LimitUsage
    daily: LimitUsage
    authenticated: bool = False


class BudgetCheckResult(BaseModel):
    allowed: bool
    used: float
    limit: float
    remaining: float
    # Set when the store could not be read and the fail mode decided
    degraded: bool = False


class BudgetStatus(BaseModel):
    day: str
    used: float
    limit: float
    remaining: float
    percent_used: float


class PeriodKeys(BaseModel):
    """Calendar buckets in the identity's local time."""

    daily: str  # "2025-03-15"
    weekly: str  # "2025-W11"
    monthly: str  # "2025-03"
    yearly: str  # "2025"


class ContentEntry(BaseModel):
    """
    A generated payload stored under a content key.

    Trusted on read only when its schema version is current and its input
    hash matches the caller's.
    """

    key: str
    payload: Any
    schema_version: int
    input_hash: str
    computed_at: datetime = Field(default_factory=utcnow)

    def is_valid_for(self, schema_version: int, input_hash: str) -> bool:
        return self.schema_version >= schema_version and self.input_hash == input_hash


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class StalenessMarker(BaseModel):
    identity: str
    last_synced_local_date: str | None = None
    last_sync_status: SyncStatus | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class Usage(BaseModel):
    """Billable units reported by the external generator."""

    model: str
    input_units: int = 0
    output_units: int = 0


class GenerationRequest(BaseModel):
    """Everything the orchestrator needs to guard one generation."""

    kind: str  # e.g. "insight"
    identity: str
    timeframe: str = "today"
    timezone: str | None = None
    variant: str = "en"
    schema_version: int = 1
    input_hash: str = ""
    authenticated: bool = True
    input: Any = None  # Opaque, handed to the generator


class GenerationOutcome(BaseModel):
    payload: Any
    cached: bool
    content_key: str
    period_keys: PeriodKeys
    cost: float = 0.0
