"""
Daily spend circuit breaker.

A single counter per UTC calendar day tracks what every process has spent
on the external generator. Before a generation: check_budget(); after a
successful one: increment_budget(). Cache hits never touch the counter.
"""

from datetime import datetime, timezone

import structlog

from genguard.core.config import FailMode, Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable, BudgetExceeded, ServiceUnavailable
from genguard.core.metrics import get_metrics
from genguard.core.models import BudgetCheckResult, BudgetStatus
from genguard.core.pricing import estimate_cost

logger = structlog.get_logger()


def budget_day(now: datetime | None = None) -> str:
    """UTC day key (YYYY-MM-DD)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


class BudgetCircuitBreaker:
    """Global daily budget cap backed by one shared counter."""

    def __init__(
        self,
        store,
        limit: float | None = None,
        fail_mode: FailMode | None = None,
        settings: Settings | None = None,
        pricing: dict[str, dict[str, float]] | None = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.limit = float(limit if limit is not None else settings.daily_budget_usd)
        self.fail_mode = fail_mode or settings.budget_fail_mode
        self.counter_ttl = settings.budget_counter_ttl_seconds
        self.pricing = pricing

    def budget_key(self, now: datetime | None = None) -> str:
        return f"budget:{budget_day(now)}"

    async def _read_used(self, now: datetime | None = None) -> float:
        if not await self.store.probe():
            raise BackingStoreUnavailable("budget store unavailable")
        raw = await self.store.get(self.budget_key(now))
        return float(raw) if raw else 0.0

    async def check_budget(self, now: datetime | None = None) -> BudgetCheckResult:
        """
        Check whether today's spend leaves room for another generation.

        allowed is used < limit: reaching the limit exactly blocks the
        next request, not the one that reached it.
        """
        try:
            used = await self._read_used(now)
        except (BackingStoreUnavailable, ValueError) as e:
            return self._degraded(e)

        allowed = used < self.limit
        if not allowed:
            logger.warning("budget_exceeded", used=round(used, 4), limit=self.limit)
            get_metrics().increment("genguard_budget_denials_total", {"reason": "exceeded"})

        return BudgetCheckResult(
            allowed=allowed,
            used=used,
            limit=self.limit,
            remaining=max(0.0, self.limit - used),
        )

    def _degraded(self, error: Exception) -> BudgetCheckResult:
        logger.error("budget_check_failed", error=str(error), fail_mode=self.fail_mode.value)
        if self.fail_mode == FailMode.OPEN:
            logger.warning("budget_failing_open", note="risky, non-production only")
            return BudgetCheckResult(allowed=True, used=0.0, limit=self.limit, remaining=self.limit, degraded=True)

        get_metrics().increment("genguard_budget_denials_total", {"reason": "store_unavailable"})
        return BudgetCheckResult(allowed=False, used=0.0, limit=self.limit, remaining=0.0, degraded=True)

    async def enforce_budget(self, now: datetime | None = None) -> BudgetCheckResult:
        """
        check_budget, raising when not allowed.

        A spent budget raises BudgetExceeded; a closed-mode store outage
        raises ServiceUnavailable since nothing is known about spend.
        """
        result = await self.check_budget(now)
        if not result.allowed:
            if result.degraded:
                raise ServiceUnavailable()
            raise BudgetExceeded(result.used, result.limit)
        return result

    async def increment_budget(
        self,
        model: str,
        input_units: int,
        output_units: int,
        now: datetime | None = None,
    ) -> float:
        """
        Add the cost of a finished generation to today's counter.

        Returns the new total. Never raises: on any failure the error is
        logged and 0 is returned so accounting cannot break the request.
        """
        try:
            cost = estimate_cost(model, input_units, output_units, self.pricing)
            if cost <= 0:
                return 0.0

            new_total = await self.store.incrbyfloat(self.budget_key(now), cost, self.counter_ttl)
            get_metrics().increment("genguard_budget_spend_usd_total", {"model": model}, value=cost)
            logger.info("budget_updated", cost=round(cost, 6), total=round(new_total, 4), model=model)
            return new_total
        except Exception as e:
            logger.error("budget_increment_failed", model=model, error=str(e))
            return 0.0

    async def get_budget_status(self, now: datetime | None = None) -> BudgetStatus:
        """Current spend for monitoring. Reports zero usage when the store is down."""
        day = budget_day(now)
        try:
            used = await self._read_used(now)
        except (BackingStoreUnavailable, ValueError) as e:
            logger.warning("budget_status_unavailable", error=str(e))
            used = 0.0

        return BudgetStatus(
            day=day,
            used=used,
            limit=self.limit,
            remaining=max(0.0, self.limit - used),
            percent_used=used / self.limit * 100,
        )
