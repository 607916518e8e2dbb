"""
Tests for the next-day pre-warm worker.

Verifies:
- Only identities close to their local midnight are warmed
- Content is written under tomorrow's local daily key
- Cached and locked identities are skipped
- The run stops once the budget is spent
- A failing generation is counted and does not stop the run
"""

from datetime import datetime, timezone

import pytest

from genguard.core.locks import LockManager
from genguard.core.models import Usage
from genguard.core.orchestrator import build_generation_guard
from genguard.workers.prewarm import (
    PrewarmCandidate,
    is_near_local_midnight,
    next_local_midnight,
    prewarm_daily,
)

# 22:00 UTC: UTC is 2h from midnight, Tokyo (07:00 next day) is not
NOW = datetime(2025, 3, 15, 22, 0, tzinfo=timezone.utc)
TOMORROW_KEY = "insight:v1:u-utc:daily:2025-03-16:en"


async def _generate(input):
    return {"text": f"warm for {input}"}, Usage(model="gpt-4o-mini", input_units=100, output_units=100)


class TestMidnightWindow:
    def test_next_local_midnight(self):
        midnight = next_local_midnight("America/New_York", NOW)

        assert midnight.isoformat() == "2025-03-16T00:00:00-04:00"

    def test_near_midnight(self):
        assert is_near_local_midnight("UTC", NOW, window_hours=3) is True
        assert is_near_local_midnight("Asia/Tokyo", NOW, window_hours=3) is False
        assert is_near_local_midnight("UTC", NOW, window_hours=1) is False


class TestPrewarmDaily:
    @pytest.mark.asyncio
    async def test_warms_only_candidates_in_window(self, store, settings):
        guard = build_generation_guard(store, settings)
        candidates = [
            PrewarmCandidate(identity="u-utc", timezone="UTC", input="u-utc"),
            PrewarmCandidate(identity="u-tokyo", timezone="Asia/Tokyo", input="u-tokyo"),
        ]

        stats = await prewarm_daily(guard, candidates, _generate, now=NOW)

        assert stats["scanned"] == 2
        assert stats["candidates"] == 1
        assert stats["warmed"] == 1
        assert await guard.content.read(TOMORROW_KEY, 1, "") == {"text": "warm for u-utc"}
        assert not any("u-tokyo" in key for key in store.data)

    @pytest.mark.asyncio
    async def test_does_not_consume_rate_limits(self, store, settings):
        guard = build_generation_guard(store, settings)

        await prewarm_daily(guard, [PrewarmCandidate(identity="u-utc", timezone="UTC")], _generate, now=NOW)

        assert not any(key.startswith("ratelimit:") for key in store.data)

    @pytest.mark.asyncio
    async def test_skips_cached(self, store, settings):
        guard = build_generation_guard(store, settings)
        await guard.content.write(TOMORROW_KEY, {"text": "already"}, schema_version=1, input_hash="")

        stats = await prewarm_daily(guard, [PrewarmCandidate(identity="u-utc", timezone="UTC")], _generate, now=NOW)

        assert stats["skipped_cached"] == 1
        assert stats["warmed"] == 0

    @pytest.mark.asyncio
    async def test_skips_locked(self, store, settings):
        guard = build_generation_guard(store, settings)
        await LockManager(store, settings=settings).acquire("lock:insight:u-utc:daily:2025-03-16", 60)

        stats = await prewarm_daily(guard, [PrewarmCandidate(identity="u-utc", timezone="UTC")], _generate, now=NOW)

        assert stats["skipped_locked"] == 1
        assert TOMORROW_KEY not in store.data

    @pytest.mark.asyncio
    async def test_stops_when_budget_spent(self, store, settings):
        guard = build_generation_guard(store, settings)
        store.data[guard.budget.budget_key()] = "100"
        candidates = [PrewarmCandidate(identity=f"u{i}", timezone="UTC") for i in range(3)]

        stats = await prewarm_daily(guard, candidates, _generate, now=NOW)

        assert stats["budget_exhausted"] is True
        assert stats["warmed"] == 0
        assert stats["candidates"] == 1

    @pytest.mark.asyncio
    async def test_errors_are_counted_and_lock_released(self, store, settings):
        guard = build_generation_guard(store, settings)

        async def failing(input):
            if input == "bad":
                raise RuntimeError("provider 500")
            return await _generate(input)

        candidates = [
            PrewarmCandidate(identity="u-bad", timezone="UTC", input="bad"),
            PrewarmCandidate(identity="u-good", timezone="UTC", input="good"),
        ]

        stats = await prewarm_daily(guard, candidates, failing, now=NOW)

        assert stats["errors"] == 1
        assert stats["warmed"] == 1
        assert "lock:insight:u-bad:daily:2025-03-16" not in store.data

    @pytest.mark.asyncio
    async def test_respects_identity_cap(self, store, settings):
        settings.prewarm_max_identities = 2
        guard = build_generation_guard(store, settings)
        candidates = [PrewarmCandidate(identity=f"u{i}", timezone="UTC") for i in range(5)]

        stats = await prewarm_daily(guard, candidates, _generate, now=NOW)

        assert stats["scanned"] == 2
        assert stats["warmed"] == 2
