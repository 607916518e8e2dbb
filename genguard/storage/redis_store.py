"""
Redis adapter for the shared backing store.

Redis holds:
- Rate-limit counters (INCR + TTL)
- The daily budget counter (INCRBYFLOAT)
- Advisory locks (SET NX EX, compare-and-delete release)
- Cached content entries and staleness markers (JSON strings)

The adapter never lets a Redis error escape as-is: failures are raised as
BackingStoreUnavailable and flip the adapter to unhealthy until a later
probe succeeds. Callers decide how to degrade.
"""

import json
import time
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from genguard.core.config import Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable

logger = structlog.get_logger()

# Deletes KEYS[1] only while it still holds ARGV[1]
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisStore:
    """get / set-with-TTL / delete / atomic increment / set-if-absent over Redis."""

    def __init__(self, settings: Settings | None = None, client: redis.Redis | None = None):
        self.settings = settings or get_settings()
        self.client: redis.Redis | None = client
        self._available = False
        self._probed_at: float | None = None

    async def connect(self):
        """Initialize the Redis connection and probe it once."""
        if self.client is None:
            if not self.settings.redis_url:
                logger.warning("redis_url_missing", fallback="unavailable")
                return
            self.client = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.settings.redis_connect_timeout,
            )
        if await self.probe(force=True):
            logger.info("connected_to_redis")

    # =============================================================
    # HEALTH
    # =============================================================

    @property
    def is_available(self) -> bool:
        return self.client is not None and self._available

    async def probe(self, force: bool = False) -> bool:
        """
        Cheap liveness check, cached per process.

        A healthy result is trusted until an operation fails; an unhealthy
        one is re-checked at most once per reprobe interval.
        """
        if self.client is None:
            return False

        now = time.monotonic()
        if not force and self._probed_at is not None:
            if self._available:
                return True
            if now - self._probed_at < self.settings.redis_reprobe_interval_seconds:
                return False

        self._probed_at = now
        try:
            self._available = bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.warning("redis_probe_failed", error=str(e))
            self._available = False
        return self._available

    def mark_unavailable(self, error: Exception | None = None):
        """Flag the store unhealthy until the next successful probe."""
        if self._available:
            logger.warning("redis_marked_unavailable", error=str(error) if error else None)
        self._available = False
        self._probed_at = time.monotonic()

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise BackingStoreUnavailable("redis not configured")
        return self.client

    def _fail(self, op: str, key: str, error: Exception) -> BackingStoreUnavailable:
        logger.error("redis_operation_failed", op=op, key=key, error=str(error))
        self.mark_unavailable(error)
        return BackingStoreUnavailable(f"{op} {key}: {error}")

    # =============================================================
    # PLAIN VALUES
    # =============================================================

    async def get(self, key: str) -> str | None:
        client = self._require_client()
        try:
            return await client.get(key)
        except (RedisError, OSError) as e:
            raise self._fail("get", key, e) from e

    async def set(self, key: str, value: str, ttl_seconds: int | None = None):
        client = self._require_client()
        try:
            await client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            raise self._fail("set", key, e) from e

    async def delete(self, key: str) -> int:
        client = self._require_client()
        try:
            return await client.delete(key)
        except (RedisError, OSError) as e:
            raise self._fail("delete", key, e) from e

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        client = self._require_client()
        try:
            return bool(await client.expire(key, ttl_seconds))
        except (RedisError, OSError) as e:
            raise self._fail("expire", key, e) from e

    async def get_json(self, key: str) -> Any | None:
        """Get and decode a JSON value. Undecodable values read as None."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("redis_json_decode_failed", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None):
        await self.set(key, json.dumps(value, default=str), ttl_seconds)

    # =============================================================
    # ATOMIC PRIMITIVES
    # =============================================================

    async def incr_with_ttl(self, key: str) -> tuple[int, int]:
        """
        Atomically increment a counter and read its remaining TTL.

        Returns (count, ttl). ttl is -1 when the key has no expiry yet
        (first hit in a window).
        """
        client = self._require_client()
        try:
            pipe = client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
        except (RedisError, OSError) as e:
            raise self._fail("incr", key, e) from e
        return int(count), int(ttl)

    async def incrbyfloat(self, key: str, amount: float, ttl_seconds: int | None = None) -> float:
        """Atomically add to a decimal counter, refreshing its TTL."""
        client = self._require_client()
        try:
            pipe = client.pipeline(transaction=True)
            pipe.incrbyfloat(key, amount)
            if ttl_seconds:
                pipe.expire(key, ttl_seconds)
            results = await pipe.execute()
        except (RedisError, OSError) as e:
            raise self._fail("incrbyfloat", key, e) from e
        return float(results[0])

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET key value NX EX ttl. True when the write happened."""
        client = self._require_client()
        try:
            return bool(await client.set(key, value, nx=True, ex=ttl_seconds))
        except (RedisError, OSError) as e:
            raise self._fail("set_nx", key, e) from e

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only while it still holds value."""
        client = self._require_client()
        try:
            return bool(await client.eval(_COMPARE_AND_DELETE, 1, key, value))
        except (RedisError, OSError) as e:
            raise self._fail("compare_and_delete", key, e) from e

    async def close(self):
        """Close the connection."""
        if self.client:
            await self.client.aclose()
        self._available = False


# Singleton
_store: RedisStore | None = None


async def get_redis_store() -> RedisStore:
    """Get or create Redis store singleton."""
    global _store
    if _store is None:
        _store = RedisStore()
        await _store.connect()
    return _store


def reset_redis_store():
    global _store
    _store = None
