"""
Guarded generation: the path every billed generation request takes.

    period keys -> cached content (hit returns) -> rate limits -> budget
    -> lock (short retry budget) -> generator (bounded) -> budget increment
    -> content write -> lock release

Cache hits consume neither rate limit nor budget. The lock is always
released before run() returns or raises.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from pydantic import ValidationError

from genguard.core.budget import BudgetCircuitBreaker
from genguard.core.config import Settings, get_settings
from genguard.core.content_store import ContentStore
from genguard.core.errors import BackingStoreUnavailable, GenerationTimeout, LockBusy
from genguard.core.local_counter import LocalFallbackCounter
from genguard.core.locks import LockManager
from genguard.core.metrics import get_metrics
from genguard.core.models import GenerationOutcome, GenerationRequest, Usage
from genguard.core.period_keys import (
    Timeframe,
    build_content_key,
    build_lock_key,
    get_user_period_keys,
    period_value,
)
from genguard.core.pricing import estimate_cost
from genguard.core.rate_limiter import RateLimiter

logger = structlog.get_logger()

Generator = Callable[[Any], Awaitable[tuple[Any, Usage]]]


class GenerationGuard:
    """Runs an external generator behind cache, rate, budget and lock checks."""

    def __init__(
        self,
        content: ContentStore,
        rate_limiter: RateLimiter,
        budget: BudgetCircuitBreaker,
        locks: LockManager,
        settings: Settings | None = None,
    ):
        self.content = content
        self.rate_limiter = rate_limiter
        self.budget = budget
        self.locks = locks
        self.settings = settings or get_settings()

        if self.settings.generation_timeout_seconds > self.settings.generation_lock_ttl_seconds:
            logger.warning(
                "generation_timeout_exceeds_lock_ttl",
                timeout=self.settings.generation_timeout_seconds,
                lock_ttl=self.settings.generation_lock_ttl_seconds,
            )

    async def run(
        self,
        request: GenerationRequest,
        generate: Generator,
        now: datetime | None = None,
    ) -> GenerationOutcome:
        """
        Return cached content for `request` or generate it under guard.

        Raises:
            RateLimitExceeded: cooldown/hourly/daily allowance used up
            BudgetExceeded: daily spend ceiling reached
            ServiceUnavailable: store down and the budget or lock fails closed
            LockBusy: another process is generating the same key
            GenerationTimeout: generator exceeded its time bound
        """
        timeframe = Timeframe(request.timeframe)
        period_keys = get_user_period_keys(request.timezone, now)
        period = period_value(period_keys, timeframe)
        content_key = build_content_key(request.kind, request.identity, timeframe, period, request.variant)
        lock_key = build_lock_key(request.kind, request.identity, timeframe, period)

        def outcome(payload: Any, cached: bool, cost: float = 0.0) -> GenerationOutcome:
            return GenerationOutcome(
                payload=payload,
                cached=cached,
                content_key=content_key,
                period_keys=period_keys,
                cost=cost,
            )

        cached = await self._read(request, content_key)
        if cached is not None:
            logger.debug("generation_cache_hit", key=content_key)
            return outcome(cached, cached=True)

        await self.rate_limiter.enforce_tiered(request.identity, request.authenticated, scope_prefix=request.kind)
        await self.budget.enforce_budget(now)

        found: list[Any] = []

        async def filled_meanwhile() -> bool:
            payload = await self._read(request, content_key)
            if payload is not None:
                found.append(payload)
                return True
            return False

        token = await self.locks.acquire_with_retry(
            lock_key,
            self.settings.generation_lock_ttl_seconds,
            on_wait=filled_meanwhile,
        )
        if token is None:
            if found:
                logger.info("generation_filled_while_waiting", key=content_key)
                return outcome(found[0], cached=True)
            logger.info("generation_lock_busy", key=lock_key)
            raise LockBusy(lock_key)

        try:
            # Another holder may have finished between our read and acquire
            cached = await self._read(request, content_key)
            if cached is not None:
                return outcome(cached, cached=True)

            payload, usage = await self.call_generator(generate, request.input, content_key)
            cost = estimate_cost(usage.model, usage.input_units, usage.output_units, self.budget.pricing)
            await self.budget.increment_budget(usage.model, usage.input_units, usage.output_units, now)

            try:
                await self.content.write(content_key, payload, request.schema_version, request.input_hash)
            except BackingStoreUnavailable as e:
                logger.error("generation_cache_write_failed", key=content_key, error=str(e))

            return outcome(payload, cached=False, cost=cost)
        finally:
            await self.locks.release(lock_key, token)

    async def _read(self, request: GenerationRequest, content_key: str) -> Any | None:
        return await self.content.read(content_key, request.schema_version, request.input_hash)

    async def call_generator(self, generate: Generator, input: Any, content_key: str) -> tuple[Any, Usage]:
        """Invoke the external generator bounded by the generation timeout."""
        timeout = self.settings.generation_timeout_seconds
        metrics = get_metrics()
        start = time.monotonic()
        try:
            payload, usage = await asyncio.wait_for(generate(input), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.increment("genguard_generations_total", {"result": "timeout"})
            logger.error("generation_timeout", key=content_key, timeout=timeout)
            raise GenerationTimeout(content_key, timeout)
        except Exception as e:
            metrics.increment("genguard_generations_total", {"result": "error"})
            logger.error("generation_failed", key=content_key, error=str(e))
            raise

        metrics.increment("genguard_generations_total", {"result": "ok"})
        metrics.observe("genguard_generation_seconds", value=time.monotonic() - start)
        if not isinstance(usage, Usage):
            try:
                usage = Usage.model_validate(usage)
            except ValidationError as e:
                # The call is already billed upstream; keep the payload and record no spend
                metrics.increment("genguard_generation_usage_invalid_total")
                logger.error("generation_usage_invalid", key=content_key, error=str(e))
                usage = Usage(model="unknown")
        return payload, usage


def build_generation_guard(
    store,
    settings: Settings | None = None,
    fallback: LocalFallbackCounter | None = None,
) -> GenerationGuard:
    """Wire every guard component over one backing store."""
    settings = settings or get_settings()
    if fallback is None:
        fallback = LocalFallbackCounter(settings.fallback_sweep_interval_seconds)
    return GenerationGuard(
        content=ContentStore(store, settings),
        rate_limiter=RateLimiter(store, fallback, settings),
        budget=BudgetCircuitBreaker(store, settings=settings),
        locks=LockManager(store, settings=settings),
        settings=settings,
    )
