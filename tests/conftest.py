"""
Shared fixtures: an in-memory stand-in for the Redis adapter.

FakeStore mirrors RedisStore's interface (probe / get / set / incr_with_ttl /
incrbyfloat / set_if_absent / delete_if_equals ...) over dicts with a
manually advanced clock, and can be switched "down" to exercise the
degraded paths.
"""

import asyncio
import math

import pytest

from genguard.core.config import Settings
from genguard.core.errors import BackingStoreUnavailable
from genguard.core.metrics import get_metrics


class FakeStore:
    def __init__(self):
        self.data: dict[str, str] = {}
        self.expires_at: dict[str, float] = {}
        self.clock = 0.0
        self.available = True
        self.failing_ops: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    # -- harness ---------------------------------------------------

    def advance(self, seconds: float):
        self.clock += seconds

    def _check(self, op: str, key: str):
        self.calls.append((op, key))
        if not self.available or op in self.failing_ops:
            self.available = False
            raise BackingStoreUnavailable(f"{op} {key}: down")
        for k in [k for k, t in self.expires_at.items() if t <= self.clock]:
            self.data.pop(k, None)
            self.expires_at.pop(k, None)

    def _set_ttl(self, key: str, ttl_seconds: int | None):
        if ttl_seconds:
            self.expires_at[key] = self.clock + ttl_seconds
        else:
            self.expires_at.pop(key, None)

    # -- adapter interface ------------------------------------------

    @property
    def is_available(self) -> bool:
        return self.available

    async def connect(self):
        pass

    async def close(self):
        self.closed = True

    async def probe(self, force: bool = False) -> bool:
        return self.available

    def mark_unavailable(self, error=None):
        self.available = False

    async def get(self, key):
        self._check("get", key)
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds=None):
        self._check("set", key)
        self.data[key] = value
        self._set_ttl(key, ttl_seconds)

    async def delete(self, key):
        self._check("delete", key)
        self.expires_at.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def expire(self, key, ttl_seconds):
        self._check("expire", key)
        if key not in self.data:
            return False
        self._set_ttl(key, ttl_seconds)
        return True

    async def incr_with_ttl(self, key):
        self._check("incr", key)
        count = int(self.data.get(key, "0")) + 1
        self.data[key] = str(count)
        if key in self.expires_at:
            ttl = math.ceil(self.expires_at[key] - self.clock)
        else:
            ttl = -1
        return count, ttl

    async def incrbyfloat(self, key, amount, ttl_seconds=None):
        self._check("incrbyfloat", key)
        total = float(self.data.get(key, "0")) + amount
        self.data[key] = repr(total)
        if ttl_seconds:
            self._set_ttl(key, ttl_seconds)
        return total

    async def set_if_absent(self, key, value, ttl_seconds):
        await asyncio.sleep(0)  # Let concurrent callers interleave
        self._check("set_nx", key)
        if key in self.data:
            return False
        self.data[key] = value
        self._set_ttl(key, ttl_seconds)
        return True

    async def delete_if_equals(self, key, value):
        self._check("compare_and_delete", key)
        if self.data.get(key) != value:
            return False
        del self.data[key]
        self.expires_at.pop(key, None)
        return True


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        daily_budget_usd=100.0,
        lock_retry_attempts=1,
        lock_retry_delay_seconds=0.0,
        generation_timeout_seconds=1.0,
        cooldown_seconds=10,
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    get_metrics().reset()
    yield
