"""
Advisory distributed locks over the backing store.

acquire() is a single SET NX EX with a fresh holder token, which it hands
back to the caller; the lease expires on its own if the holder dies, so the
TTL must cover the worst-case duration of the guarded work. release() takes
that token and deletes the key only while it still holds it, so a late
release cannot clear a lock that expired and was re-acquired by another
holder, even one in the same process.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog

from genguard.core.config import FailMode, Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable, LockBusy, ServiceUnavailable
from genguard.core.metrics import get_metrics
from genguard.core.models import generate_token

logger = structlog.get_logger()


def _validate(key: str, ttl_seconds: int | None = None):
    if not isinstance(key, str) or not key.strip():
        raise ValueError("lock key must be a non-empty string")
    if ttl_seconds is not None and ttl_seconds <= 0:
        raise ValueError("lock ttl must be positive")


class LockManager:
    """Mutual exclusion per logical key across processes."""

    def __init__(self, store, fail_mode: FailMode | None = None, settings: Settings | None = None):
        settings = settings or get_settings()
        self.store = store
        self.fail_mode = fail_mode or settings.lock_fail_mode
        self.retry_attempts = settings.lock_retry_attempts
        self.retry_delay = settings.lock_retry_delay_seconds

    async def acquire(self, key: str, ttl_seconds: int) -> str | None:
        """
        Try once to take the lock.

        Returns the holder token to pass to release(), or None when another
        holder has the lock. When the store is unreachable the fail mode
        decides: open hands out an unwritten token, closed raises
        ServiceUnavailable so callers do not mistake an outage for contention.
        """
        _validate(key, ttl_seconds)
        token = generate_token()
        metrics = get_metrics()

        try:
            if not await self.store.probe():
                raise BackingStoreUnavailable("lock store unavailable")
            acquired = await self.store.set_if_absent(key, token, ttl_seconds)
        except BackingStoreUnavailable as e:
            if self.fail_mode == FailMode.OPEN:
                logger.warning("lock_store_unavailable_failing_open", key=key, error=str(e))
                return token
            logger.warning("lock_store_unavailable_failing_closed", key=key, error=str(e))
            metrics.increment("genguard_lock_failures_total")
            raise ServiceUnavailable() from e

        if acquired:
            metrics.increment("genguard_lock_acquired_total")
            logger.debug("lock_acquired", key=key, ttl=ttl_seconds)
            return token

        metrics.increment("genguard_lock_contended_total")
        logger.debug("lock_busy", key=key)
        return None

    async def release(self, key: str, token: str | None) -> None:
        """
        Release a lock taken with acquire().

        Never raises for store problems or for a lease that has already
        passed to another holder; both are logged.
        """
        _validate(key)
        if not token:
            logger.debug("lock_release_not_held", key=key)
            return

        try:
            deleted = await self.store.delete_if_equals(key, token)
        except BackingStoreUnavailable as e:
            logger.warning("lock_release_failed", key=key, error=str(e))
            return

        if not deleted:
            logger.warning("lock_release_token_mismatch", key=key)

    async def acquire_with_retry(
        self,
        key: str,
        ttl_seconds: int,
        attempts: int | None = None,
        delay_seconds: float | None = None,
        on_wait: Callable[[], Awaitable[bool]] | None = None,
    ) -> str | None:
        """
        acquire() with a fixed, short retry budget.

        `on_wait` runs after each failed attempt; if it returns True the
        caller no longer needs the lock (e.g. the result showed up in the
        cache) and retrying stops with None. A store outage in closed mode
        raises ServiceUnavailable on the first attempt without retrying.
        """
        attempts = self.retry_attempts if attempts is None else attempts
        delay_seconds = self.retry_delay if delay_seconds is None else delay_seconds

        for attempt in range(attempts + 1):
            token = await self.acquire(key, ttl_seconds)
            if token is not None:
                return token
            if attempt == attempts:
                break
            await asyncio.sleep(delay_seconds)
            if on_wait is not None and await on_wait():
                return None
        return None

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int):
        """Hold `key` for the body of the block, yielding the holder token; raises LockBusy if taken."""
        token = await self.acquire(key, ttl_seconds)
        if token is None:
            raise LockBusy(key)
        try:
            yield token
        finally:
            await self.release(key, token)
