"""
Distributed rate limiting with Redis + in-process fallback.

Uses Redis INCR + TTL for fixed-window counters shared by every process.
When Redis cannot be reached the same semantics run against a
LocalFallbackCounter, which is per process.
"""

import math
import time

import structlog

from genguard.core.config import Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable, RateLimitExceeded
from genguard.core.local_counter import LocalFallbackCounter
from genguard.core.metrics import get_metrics
from genguard.core.models import Backend, LimitUsage, RateLimitResult, TieredRateLimitResult

logger = structlog.get_logger()

HOUR_SECONDS = 3600
DAY_SECONDS = 86400


def retry_after_seconds(result: RateLimitResult, now: float | None = None) -> int:
    """Seconds until the result's window resets (at least 1)."""
    now = time.time() if now is None else now
    return max(1, math.ceil(result.reset_at - now))


def rate_limit_headers(result: TieredRateLimitResult) -> dict[str, str]:
    """Response headers describing an identity's tiered usage."""
    headers = {
        "X-RateLimit-Hourly-Limit": str(result.hourly.limit),
        "X-RateLimit-Hourly-Used": str(result.hourly.used),
        "X-RateLimit-Daily-Limit": str(result.daily.limit),
        "X-RateLimit-Daily-Used": str(result.daily.used),
        "X-RateLimit-Authenticated": str(result.authenticated).lower(),
    }
    if result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


class RateLimiter:
    """
    check-and-consume over fixed windows.

    Every call both checks and increments, so callers must not call it
    speculatively.
    """

    def __init__(self, store, fallback: LocalFallbackCounter, settings: Settings | None = None):
        self.store = store
        self.fallback = fallback
        self.settings = settings or get_settings()

    async def check_and_consume(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        now: float | None = None,
    ) -> RateLimitResult:
        """
        Count one request against `key` and report whether it is allowed.

        Args:
            key: Counter identity (e.g. "insights:hourly:user-123")
            limit: Max requests per window
            window_seconds: Window length
        """
        if limit < 0 or window_seconds <= 0:
            raise ValueError("limit must be >= 0 and window_seconds > 0")

        counter_key = f"ratelimit:{key}"
        now = time.time() if now is None else now

        if await self.store.probe():
            try:
                result = await self._consume_redis(counter_key, limit, window_seconds, now)
            except BackingStoreUnavailable as e:
                logger.warning("rate_limit_redis_failed_using_fallback", key=counter_key, error=str(e))
                result = self._consume_memory(counter_key, limit, window_seconds, now)
        else:
            result = self._consume_memory(counter_key, limit, window_seconds, now)

        metrics = get_metrics()
        metrics.increment("genguard_rate_limit_checks_total", {"backend": result.backend.value})
        if not result.allowed:
            metrics.increment("genguard_rate_limit_rejections_total", {"backend": result.backend.value})
        return result

    async def _consume_redis(self, key: str, limit: int, window_seconds: int, now: float) -> RateLimitResult:
        count, ttl = await self.store.incr_with_ttl(key)

        # First hit in the window: start the clock. A concurrent first hit
        # sets the same TTL, which is harmless.
        if ttl < 0:
            await self.store.expire(key, window_seconds)
            ttl = window_seconds

        return RateLimitResult(
            allowed=count <= limit,
            used=count,
            remaining=max(0, limit - count),
            limit=limit,
            reset_at=now + ttl,
            backend=Backend.REDIS,
        )

    def _consume_memory(self, key: str, limit: int, window_seconds: int, now: float) -> RateLimitResult:
        count, reset_at = self.fallback.hit(key, window_seconds, now=now)
        return RateLimitResult(
            allowed=count <= limit,
            used=count,
            remaining=max(0, limit - count),
            limit=limit,
            reset_at=reset_at,
            backend=Backend.MEMORY,
        )

    # =============================================================
    # TIERED LIMITS (cooldown -> hourly -> daily)
    # =============================================================

    def tier_limits(self, authenticated: bool) -> tuple[int, int]:
        if authenticated:
            return self.settings.auth_hourly_limit, self.settings.auth_daily_limit
        return self.settings.anon_hourly_limit, self.settings.anon_daily_limit

    async def check_tiered(
        self,
        identity: str,
        authenticated: bool = True,
        scope_prefix: str = "generation",
        now: float | None = None,
    ) -> TieredRateLimitResult:
        """
        Apply the cooldown, hourly and daily limits for one identity.

        The cooldown marker is only written once every check has passed,
        so a rejected request does not extend the cooldown.
        """
        now = time.time() if now is None else now
        hourly_limit, daily_limit = self.tier_limits(authenticated)
        hourly = LimitUsage(limit=hourly_limit)
        daily = LimitUsage(limit=daily_limit)

        cooldown_key = f"{scope_prefix}:cooldown:{identity}"
        cooldown = self.settings.cooldown_seconds
        last_request = await self._read_cooldown(cooldown_key)
        if last_request is not None and cooldown > 0:
            remaining = cooldown - math.floor(now - last_request)
            if remaining > 0:
                get_metrics().increment("genguard_rate_limit_rejections_total", {"backend": "cooldown"})
                return TieredRateLimitResult(
                    allowed=False,
                    reason="cooldown",
                    retry_after_seconds=remaining,
                    hourly=hourly,
                    daily=daily,
                    authenticated=authenticated,
                )

        hourly_result = await self.check_and_consume(
            f"{scope_prefix}:hourly:{identity}", hourly_limit, HOUR_SECONDS, now=now
        )
        hourly.used = hourly_result.used
        if not hourly_result.allowed:
            return TieredRateLimitResult(
                allowed=False,
                reason="hourly",
                retry_after_seconds=retry_after_seconds(hourly_result, now),
                hourly=hourly,
                daily=daily,
                authenticated=authenticated,
            )

        daily_result = await self.check_and_consume(
            f"{scope_prefix}:daily:{identity}", daily_limit, DAY_SECONDS, now=now
        )
        daily.used = daily_result.used
        if not daily_result.allowed:
            return TieredRateLimitResult(
                allowed=False,
                reason="daily",
                retry_after_seconds=retry_after_seconds(daily_result, now),
                hourly=hourly,
                daily=daily,
                authenticated=authenticated,
            )

        if cooldown > 0:
            await self._write_cooldown(cooldown_key, now, cooldown)

        return TieredRateLimitResult(allowed=True, hourly=hourly, daily=daily, authenticated=authenticated)

    async def enforce_tiered(
        self,
        identity: str,
        authenticated: bool = True,
        scope_prefix: str = "generation",
        now: float | None = None,
    ) -> TieredRateLimitResult:
        """check_tiered, raising RateLimitExceeded on rejection."""
        result = await self.check_tiered(identity, authenticated, scope_prefix, now)
        if not result.allowed:
            logger.info("rate_limited", identity=identity, scope=result.reason)
            raise RateLimitExceeded(result.reason, result.retry_after_seconds)
        return result

    async def _read_cooldown(self, key: str) -> float | None:
        # Without Redis the cooldown is skipped; hourly/daily still apply
        if not self.store.is_available:
            return None
        try:
            raw = await self.store.get(key)
        except BackingStoreUnavailable:
            return None
        try:
            return float(raw) if raw is not None else None
        except ValueError:
            return None

    async def _write_cooldown(self, key: str, now: float, cooldown: int):
        if not self.store.is_available:
            return
        try:
            await self.store.set(key, str(now), cooldown)
        except BackingStoreUnavailable as e:
            logger.warning("cooldown_write_failed", key=key, error=str(e))
