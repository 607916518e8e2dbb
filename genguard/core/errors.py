"""
Error taxonomy for the generation core.

Caller-facing errors derive from GuardError and carry a machine-readable
code, a human-readable message and an optional retry hint. Backing store
outages are internal and always translated by the component that sees them.
"""

import math


class GuardError(Exception):
    """Base class for errors surfaced to request handlers."""

    code = "GUARD_ERROR"
    http_status = 503
    title = "Service unavailable"

    def __init__(self, message: str, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        body = {
            "error": self.title,
            "message": self.message,
            "errorCode": self.code,
        }
        if self.retry_after_seconds is not None:
            body["retryAfterSeconds"] = self.retry_after_seconds
        return body


class RateLimitExceeded(GuardError):
    """An identity exceeded its cooldown, hourly or daily allowance."""

    http_status = 429
    title = "Rate limit exceeded"

    SCOPES = ("cooldown", "hourly", "daily")

    def __init__(self, scope: str, retry_after_seconds: int):
        if scope not in self.SCOPES:
            raise ValueError(f"Unknown rate limit scope: {scope}")
        self.scope = scope
        self.code = "COOLDOWN" if scope == "cooldown" else "RATE_LIMIT"
        if scope == "cooldown":
            message = f"Please wait {retry_after_seconds} seconds before trying again."
        else:
            minutes = max(1, math.ceil(retry_after_seconds / 60))
            message = f"You've reached your {scope} limit. Try again in {minutes} minutes."
        super().__init__(message, retry_after_seconds)


class BudgetExceeded(GuardError):
    """The global daily generation budget is spent."""

    code = "BUDGET_EXCEEDED"
    title = "Budget exceeded"

    def __init__(self, used: float, limit: float):
        self.used = used
        self.limit = limit
        super().__init__("Service temporarily unavailable. Please try again later.")


class LockBusy(GuardError):
    """Another process is already generating content for this key."""

    code = "LOCK_BUSY"
    title = "Generation in progress"

    def __init__(self, key: str, retry_after_seconds: int = 5):
        self.key = key
        super().__init__("Please try again in a moment.", retry_after_seconds)


class GenerationTimeout(GuardError):
    """The external generator did not answer within its time bound."""

    code = "GENERATION_TIMEOUT"
    title = "Generation in progress"

    def __init__(self, key: str, timeout: float, retry_after_seconds: int = 10):
        self.key = key
        self.timeout = timeout
        super().__init__("Generation is taking longer than usual. Please retry shortly.", retry_after_seconds)


class ServiceUnavailable(GuardError):
    """A fail-closed guard could not reach its backing store."""

    code = "STORE_UNAVAILABLE"

    def __init__(self, message: str = "Please try again in a moment."):
        super().__init__(message, retry_after_seconds=5)


class BackingStoreUnavailable(Exception):
    """The shared key-value store could not be reached (internal only)."""
