"""
Staleness detection and fire-and-forget background refresh.

An identity's periodic upstream data is stale when its last successful sync
happened on a different local calendar day than "today" in the identity's
own timezone. A stale identity gets one background refresh, deduplicated
across processes by a long-lived lock that is released when the refresh
ends (or expires on its own if the process dies mid-refresh).
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from pydantic import ValidationError

from genguard.core.config import Settings, get_settings
from genguard.core.errors import BackingStoreUnavailable
from genguard.core.metrics import get_metrics
from genguard.core.models import StalenessMarker, SyncStatus, utcnow
from genguard.core.period_keys import today_local_date

logger = structlog.get_logger()

MARKER_TTL_SECONDS = 30 * 86400

RefreshFn = Callable[[str], Awaitable[Any]]
UpstreamCheck = Callable[[str], Awaitable[bool]]


def build_refresh_lock_key(identity: str) -> str:
    return f"lock:refresh:{identity}"


class RefreshTrigger:
    """Decides when to refresh and runs the refresh without blocking callers."""

    def __init__(self, locks, refresh: RefreshFn, store=None, settings: Settings | None = None):
        self.locks = locks
        self.refresh = refresh
        self.store = store
        self.settings = settings or get_settings()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # =============================================================
    # STALENESS
    # =============================================================

    async def is_stale(
        self,
        identity: str,
        timezone: str | None,
        last_synced_local_date: str | None,
        has_upstream: UpstreamCheck | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        True when the identity has upstream data and was not synced on its
        own local "today". A failing upstream check counts as not stale.
        """
        today = today_local_date(timezone, now)
        if last_synced_local_date == today:
            return False

        if has_upstream is not None:
            try:
                if not await has_upstream(identity):
                    return False
            except Exception as e:
                logger.warning("upstream_check_failed", identity=identity, error=str(e))
                return False

        logger.info("identity_stale", identity=identity, last_sync=last_synced_local_date, today=today)
        return True

    # =============================================================
    # TRIGGER
    # =============================================================

    async def trigger_refresh_fire_and_forget(self, identity: str, timezone: str | None = None) -> bool:
        """
        Start a background refresh for `identity` unless one is running.

        Returns True as soon as the refresh is scheduled, False when another
        process holds the refresh lock or the lock could not be taken.
        """
        lock_key = build_refresh_lock_key(identity)
        try:
            token = await self.locks.acquire(lock_key, self.settings.refresh_lock_ttl_seconds)
        except Exception as e:
            logger.error("refresh_trigger_failed", identity=identity, error=str(e))
            return False

        if token is None:
            logger.info("refresh_already_running", identity=identity)
            return False

        task = asyncio.create_task(
            self._supervise(identity, timezone, lock_key, token), name=f"refresh:{identity}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        get_metrics().increment("genguard_refresh_triggered_total")
        logger.info("refresh_triggered", identity=identity)
        return True

    async def maybe_refresh(
        self,
        identity: str,
        timezone: str | None,
        has_upstream: UpstreamCheck | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Trigger a refresh if the stored marker says the identity is stale."""
        marker = await self.load_marker(identity)
        last_synced = marker.last_synced_local_date if marker else None
        if not await self.is_stale(identity, timezone, last_synced, has_upstream, now):
            return False
        return await self.trigger_refresh_fire_and_forget(identity, timezone)

    async def _supervise(self, identity: str, timezone: str | None, lock_key: str, token: str):
        status = SyncStatus.FAILED
        try:
            await self.refresh(identity)
            status = SyncStatus.SUCCESS
            logger.info("refresh_completed", identity=identity)
        except Exception as e:
            logger.error("refresh_failed", identity=identity, error=str(e))
            get_metrics().increment("genguard_refresh_failures_total")
        finally:
            try:
                await self.record_sync(identity, timezone, status)
            except Exception as e:
                logger.warning("refresh_marker_write_failed", identity=identity, error=str(e))
            try:
                await self.locks.release(lock_key, token)
            except Exception as e:
                logger.warning("refresh_lock_release_failed", identity=identity, error=str(e))

    async def drain(self, timeout: float | None = None):
        """Wait for in-flight refreshes (shutdown helper)."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    # =============================================================
    # MARKERS
    # =============================================================

    @staticmethod
    def marker_key(identity: str) -> str:
        return f"refresh:marker:{identity}"

    async def load_marker(self, identity: str) -> StalenessMarker | None:
        if self.store is None:
            return None
        try:
            raw = await self.store.get(self.marker_key(identity))
        except BackingStoreUnavailable as e:
            logger.warning("refresh_marker_unavailable", identity=identity, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return StalenessMarker.model_validate_json(raw)
        except ValidationError:
            logger.warning("refresh_marker_corrupt", identity=identity)
            return None

    async def record_sync(
        self,
        identity: str,
        timezone: str | None,
        status: SyncStatus,
        now: datetime | None = None,
    ) -> StalenessMarker | None:
        """
        Persist the outcome of a refresh. Only a success moves the
        last synced date forward.
        """
        if self.store is None:
            return None
        marker = await self.load_marker(identity) or StalenessMarker(identity=identity)
        marker.last_sync_status = status
        marker.updated_at = utcnow()
        if status == SyncStatus.SUCCESS:
            marker.last_synced_local_date = today_local_date(timezone, now)
        await self.store.set(self.marker_key(identity), marker.model_dump_json(), MARKER_TTL_SECONDS)
        return marker
