"""
Tests for the daily budget circuit breaker and pricing.

Verifies:
- used < limit allows, reaching the limit exactly blocks
- Store outage follows the configured fail mode; a closed-mode outage
  is reported as ServiceUnavailable, not as a spent budget
- increment_budget prices usage, writes with a TTL and never raises
- Zero-cost usage does not touch the counter
- Budget status reporting
"""

from datetime import datetime, timezone

import pytest

from genguard.core.budget import BudgetCircuitBreaker, budget_day
from genguard.core.config import FailMode
from genguard.core.errors import BudgetExceeded, ServiceUnavailable
from genguard.core.pricing import PRICING_TABLE, estimate_cost

NOW = datetime(2025, 3, 15, 23, 30, tzinfo=timezone.utc)


class TestBudgetDay:
    def test_utc_day(self):
        assert budget_day(NOW) == "2025-03-15"

    def test_converts_offset_to_utc(self):
        from datetime import timedelta

        local = datetime(2025, 3, 16, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert budget_day(local) == "2025-03-15"

    def test_naive_treated_as_utc(self):
        assert budget_day(datetime(2025, 1, 2, 3, 4)) == "2025-01-02"


class TestCheckBudget:
    @pytest.mark.asyncio
    async def test_allows_just_under_limit(self, store, settings):
        store.data["budget:2025-03-15"] = "99.99"
        breaker = BudgetCircuitBreaker(store, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is True
        assert result.used == pytest.approx(99.99)
        assert result.remaining == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_half_spent(self, store, settings):
        store.data["budget:2025-03-15"] = "50"
        breaker = BudgetCircuitBreaker(store, limit=100, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.model_dump() == {
            "allowed": True,
            "used": 50.0,
            "limit": 100.0,
            "remaining": 50.0,
            "degraded": False,
        }

    @pytest.mark.asyncio
    async def test_over_limit(self, store, settings):
        store.data["budget:2025-03-15"] = "150"
        breaker = BudgetCircuitBreaker(store, limit=100, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is False
        assert result.used == 150.0
        assert result.remaining == 0.0

    @pytest.mark.asyncio
    async def test_blocks_at_exact_limit(self, store, settings):
        store.data["budget:2025-03-15"] = "100.0"
        breaker = BudgetCircuitBreaker(store, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is False
        assert result.remaining == 0.0

    @pytest.mark.asyncio
    async def test_no_spend_yet(self, store, settings):
        breaker = BudgetCircuitBreaker(store, limit=5.0, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is True
        assert result.used == 0.0
        assert result.remaining == 5.0

    @pytest.mark.asyncio
    async def test_store_down_fails_closed(self, store, settings):
        store.available = False
        breaker = BudgetCircuitBreaker(store, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is False
        assert result.remaining == 0.0
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_store_down_fails_open_when_configured(self, store, settings):
        store.available = False
        breaker = BudgetCircuitBreaker(store, fail_mode=FailMode.OPEN, settings=settings)

        result = await breaker.check_budget(NOW)

        assert result.allowed is True
        assert result.remaining == breaker.limit
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_read_error_follows_fail_mode(self, store, settings):
        store.failing_ops.add("get")
        breaker = BudgetCircuitBreaker(store, settings=settings)

        assert (await breaker.check_budget(NOW)).allowed is False

    @pytest.mark.asyncio
    async def test_corrupt_counter_follows_fail_mode(self, store, settings):
        store.data["budget:2025-03-15"] = "not-a-number"
        breaker = BudgetCircuitBreaker(store, settings=settings)

        assert (await breaker.check_budget(NOW)).allowed is False

    @pytest.mark.asyncio
    async def test_enforce_raises(self, store, settings):
        store.data["budget:2025-03-15"] = "150"
        breaker = BudgetCircuitBreaker(store, settings=settings)

        with pytest.raises(BudgetExceeded) as exc_info:
            await breaker.enforce_budget(NOW)

        assert exc_info.value.used == 150.0
        assert exc_info.value.code == "BUDGET_EXCEEDED"

    @pytest.mark.asyncio
    async def test_enforce_outage_is_service_unavailable(self, store, settings):
        store.available = False
        breaker = BudgetCircuitBreaker(store, settings=settings)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await breaker.enforce_budget(NOW)

        assert exc_info.value.code == "STORE_UNAVAILABLE"
        assert exc_info.value.retry_after_seconds == 5

    @pytest.mark.asyncio
    async def test_enforce_outage_fail_open_allows(self, store, settings):
        store.available = False
        breaker = BudgetCircuitBreaker(store, fail_mode=FailMode.OPEN, settings=settings)

        result = await breaker.enforce_budget(NOW)

        assert result.allowed is True

    def test_non_positive_setting_uses_default(self):
        from genguard.core.config import Settings

        assert Settings(_env_file=None, daily_budget_usd=0).daily_budget_usd == 100.0
        assert Settings(_env_file=None, daily_budget_usd=-3).daily_budget_usd == 100.0


class TestIncrementBudget:
    @pytest.mark.asyncio
    async def test_adds_cost_with_ttl(self, store, settings):
        breaker = BudgetCircuitBreaker(store, settings=settings)

        total = await breaker.increment_budget("gpt-4o-mini", 1_000_000, 1_000_000, NOW)

        assert total == pytest.approx(0.75)
        assert float(store.data["budget:2025-03-15"]) == pytest.approx(0.75)
        assert store.expires_at["budget:2025-03-15"] == store.clock + 172800

    @pytest.mark.asyncio
    async def test_accumulates(self, store, settings):
        breaker = BudgetCircuitBreaker(store, settings=settings)
        await breaker.increment_budget("gpt-4o", 1_000_000, 0, NOW)

        total = await breaker.increment_budget("gpt-4o", 0, 1_000_000, NOW)

        assert total == pytest.approx(12.5)

    @pytest.mark.asyncio
    async def test_zero_usage_does_not_write(self, store, settings):
        breaker = BudgetCircuitBreaker(store, settings=settings)

        total = await breaker.increment_budget("gpt-4o-mini", 0, 0, NOW)

        assert total == 0.0
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_unknown_model_costs_nothing(self, store, settings):
        breaker = BudgetCircuitBreaker(store, settings=settings)

        assert await breaker.increment_budget("mystery-model", 500, 500, NOW) == 0.0
        assert "budget:2025-03-15" not in store.data

    @pytest.mark.asyncio
    async def test_store_failure_returns_zero(self, store, settings):
        store.failing_ops.add("incrbyfloat")
        breaker = BudgetCircuitBreaker(store, settings=settings)

        assert await breaker.increment_budget("gpt-4o-mini", 1000, 1000, NOW) == 0.0

    @pytest.mark.asyncio
    async def test_custom_pricing_table(self, store, settings):
        breaker = BudgetCircuitBreaker(store, settings=settings, pricing={"house": {"input": 1.0, "output": 1.0}})

        assert await breaker.increment_budget("house", 2_000_000, 0, NOW) == pytest.approx(2.0)


class TestBudgetStatus:
    @pytest.mark.asyncio
    async def test_reports_usage(self, store, settings):
        store.data["budget:2025-03-15"] = "25"
        breaker = BudgetCircuitBreaker(store, settings=settings)

        status = await breaker.get_budget_status(NOW)

        assert status.day == "2025-03-15"
        assert status.used == 25.0
        assert status.remaining == 75.0
        assert status.percent_used == 25.0

    @pytest.mark.asyncio
    async def test_store_down_reports_zero(self, store, settings):
        store.available = False
        breaker = BudgetCircuitBreaker(store, settings=settings)

        status = await breaker.get_budget_status(NOW)

        assert status.used == 0.0
        assert status.remaining == 100.0


class TestPricing:
    def test_known_model(self):
        assert estimate_cost("gpt-4o-mini", 1_000_000, 0) == pytest.approx(0.15)
        assert estimate_cost("gpt-4o-mini", 0, 1_000_000) == pytest.approx(0.6)

    def test_small_usage(self):
        # 1200 in + 300 out on gpt-5.1
        expected = 1200 / 1e6 * 1.25 + 300 / 1e6 * 10.0
        assert estimate_cost("gpt-5.1", 1200, 300) == pytest.approx(expected)

    def test_zero_units_exactly_zero(self):
        for model in PRICING_TABLE:
            assert estimate_cost(model, 0, 0) == 0.0

    def test_unknown_model(self):
        assert estimate_cost("unknown", 10, 10) == 0.0
