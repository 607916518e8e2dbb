"""
In-process rate counters used while the backing store is unreachable.

Counters are per process: under a store outage the effective limit is
`limit` per process rather than global.
"""

import asyncio
import time
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass
class _Window:
    count: int
    reset_at: float  # Epoch seconds


class LocalFallbackCounter:
    """Fixed-window counters in a dict, swept on a periodic timer."""

    def __init__(self, sweep_interval_seconds: float = 60.0):
        self.sweep_interval_seconds = sweep_interval_seconds
        self._windows: dict[str, _Window] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str, window_seconds: int, now: float | None = None) -> tuple[int, float]:
        """Count one request. Returns (count in window, window reset epoch)."""
        now = time.time() if now is None else now
        window = self._windows.get(key)

        if window is None or window.reset_at <= now:
            window = _Window(count=1, reset_at=now + window_seconds)
            self._windows[key] = window
            return window.count, window.reset_at

        window.count += 1
        return window.count, window.reset_at

    def sweep(self, now: float | None = None) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = time.time() if now is None else now
        expired = [k for k, w in self._windows.items() if w.reset_at <= now]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def clear(self):
        self._windows.clear()

    # =============================================================
    # LIFECYCLE
    # =============================================================

    def start(self):
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="genguard-fallback-sweep")

    async def stop(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("fallback_counters_swept", removed=removed, remaining=len(self))
