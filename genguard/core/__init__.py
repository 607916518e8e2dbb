"""Core generation guards: limits, budget, locks, keys and cached content."""

from .budget import BudgetCircuitBreaker
from .config import FailMode, Settings, get_settings
from .content_store import ContentStore
from .errors import (
    BackingStoreUnavailable,
    BudgetExceeded,
    GenerationTimeout,
    GuardError,
    LockBusy,
    RateLimitExceeded,
    ServiceUnavailable,
)
from .hashing import compute_birth_input_hash, compute_fields_hash, compute_input_hash
from .local_counter import LocalFallbackCounter
from .locks import LockManager
from .models import (
    Backend,
    BudgetCheckResult,
    BudgetStatus,
    ContentEntry,
    GenerationOutcome,
    GenerationRequest,
    PeriodKeys,
    RateLimitResult,
    StalenessMarker,
    SyncStatus,
    TieredRateLimitResult,
    Usage,
)
from .orchestrator import GenerationGuard, build_generation_guard
from .period_keys import (
    Timeframe,
    build_content_key,
    build_lock_key,
    get_user_period_keys,
    period_value,
    today_local_date,
)
from .rate_limiter import RateLimiter
from .refresh import RefreshTrigger

__all__ = [
    # Config
    "Settings",
    "FailMode",
    "get_settings",
    # Errors
    "GuardError",
    "RateLimitExceeded",
    "BudgetExceeded",
    "LockBusy",
    "GenerationTimeout",
    "ServiceUnavailable",
    "BackingStoreUnavailable",
    # Components
    "LocalFallbackCounter",
    "RateLimiter",
    "BudgetCircuitBreaker",
    "LockManager",
    "ContentStore",
    "RefreshTrigger",
    "GenerationGuard",
    "build_generation_guard",
    # Keys and hashes
    "Timeframe",
    "get_user_period_keys",
    "today_local_date",
    "period_value",
    "build_content_key",
    "build_lock_key",
    "compute_input_hash",
    "compute_fields_hash",
    "compute_birth_input_hash",
    # Models
    "Backend",
    "RateLimitResult",
    "TieredRateLimitResult",
    "BudgetCheckResult",
    "BudgetStatus",
    "PeriodKeys",
    "ContentEntry",
    "StalenessMarker",
    "SyncStatus",
    "Usage",
    "GenerationRequest",
    "GenerationOutcome",
]
