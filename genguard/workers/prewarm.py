"""
Pre-warm of next-day daily content.

Runs periodically (e.g. every 30 minutes). Identities whose local midnight
is within the pre-warm window get tomorrow's daily content generated ahead
of time, so their first request of the day is a cache hit. Scheduled work
skips the per-identity rate limits but still honours the budget and the
generation locks.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import structlog
from pydantic import BaseModel

from genguard.core.metrics import get_metrics
from genguard.core.orchestrator import GenerationGuard, Generator
from genguard.core.period_keys import (
    Timeframe,
    build_content_key,
    build_lock_key,
    get_user_period_keys,
    resolve_timezone,
)

logger = structlog.get_logger()


class PrewarmCandidate(BaseModel):
    identity: str
    timezone: str | None = None
    kind: str = "insight"
    variant: str = "en"
    schema_version: int = 1
    input_hash: str = ""
    input: Any = None


def next_local_midnight(tz_name: str | None, now: datetime | None = None) -> datetime:
    """The next local midnight in tz_name, as an aware datetime."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    zone = resolve_timezone(tz_name)
    local = now.astimezone(zone)
    tomorrow = local.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=zone)


def is_near_local_midnight(tz_name: str | None, now: datetime | None = None, window_hours: float = 3) -> bool:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    remaining = next_local_midnight(tz_name, now) - now
    return remaining <= timedelta(hours=window_hours)


async def prewarm_daily(
    guard: GenerationGuard,
    candidates: Iterable[PrewarmCandidate],
    generate: Generator,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Generate tomorrow's daily content for identities close to local midnight.

    Returns run statistics. Stops early once the daily budget is spent.
    """
    settings = guard.settings
    now = now or datetime.now(timezone.utc)
    stats = {
        "scanned": 0,
        "candidates": 0,
        "warmed": 0,
        "skipped_cached": 0,
        "skipped_locked": 0,
        "errors": 0,
        "budget_exhausted": False,
    }

    for candidate in candidates:
        if stats["scanned"] >= settings.prewarm_max_identities:
            logger.info("prewarm_cap_reached", cap=settings.prewarm_max_identities)
            break
        stats["scanned"] += 1

        if not is_near_local_midnight(candidate.timezone, now, settings.prewarm_window_hours):
            continue
        stats["candidates"] += 1

        target = next_local_midnight(candidate.timezone, now)
        period = get_user_period_keys(candidate.timezone, target).daily
        content_key = build_content_key(
            candidate.kind, candidate.identity, Timeframe.TODAY, period, candidate.variant
        )
        lock_key = build_lock_key(candidate.kind, candidate.identity, Timeframe.TODAY, period)

        try:
            cached = await guard.content.read(content_key, candidate.schema_version, candidate.input_hash)
            if cached is not None:
                stats["skipped_cached"] += 1
                continue

            budget = await guard.budget.check_budget()
            if not budget.allowed:
                stats["budget_exhausted"] = True
                logger.warning("prewarm_budget_exhausted", used=budget.used, limit=budget.limit)
                break

            token = await guard.locks.acquire(lock_key, settings.generation_lock_ttl_seconds)
            if token is None:
                stats["skipped_locked"] += 1
                continue

            try:
                payload, usage = await guard.call_generator(generate, candidate.input, content_key)
                await guard.budget.increment_budget(usage.model, usage.input_units, usage.output_units)
                await guard.content.write(content_key, payload, candidate.schema_version, candidate.input_hash)
                stats["warmed"] += 1
            finally:
                await guard.locks.release(lock_key, token)

        except Exception as e:
            stats["errors"] += 1
            logger.error("prewarm_failed", identity=candidate.identity, error=str(e))

    get_metrics().increment("genguard_prewarm_warmed_total", value=stats["warmed"])
    logger.info("prewarm_complete", **stats)
    return stats
