"""
In-process metrics for the generation core, rendered as Prometheus text.

Counters reset on process restart; every process exposes its own view.
"""

import threading
import time
from collections import defaultdict

import structlog

logger = structlog.get_logger()

# Observations kept per latency series
_OBSERVATION_CAP = 500


class MetricsCollector:
    """Thread-safe counters, gauges and latency observations."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._observations: dict[str, list[float]] = defaultdict(list)
        self._start_time = time.time()

    def increment(self, name: str, labels: dict[str, str] | None = None, value: float = 1):
        key = self._key(name, labels)
        with self._lock:
            self._counters[key] += value

    def set_gauge(self, name: str, labels: dict[str, str] | None = None, *, value: float):
        key = self._key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def observe(self, name: str, labels: dict[str, str] | None = None, *, value: float):
        """Record a latency (seconds)."""
        key = self._key(name, labels)
        with self._lock:
            series = self._observations[key]
            series.append(value)
            if len(series) > _OBSERVATION_CAP:
                del series[: _OBSERVATION_CAP // 2]

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        key = self._key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        key = self._key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def prometheus_format(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines = [
            "# HELP genguard_uptime_seconds Seconds since process start",
            "# TYPE genguard_uptime_seconds gauge",
            f"genguard_uptime_seconds {time.time() - self._start_time:.1f}",
        ]

        with self._lock:
            for kind, series in (("counter", self._counters), ("gauge", self._gauges)):
                seen: set[str] = set()
                for key, val in sorted(series.items()):
                    base = key.split("{")[0]
                    if base not in seen:
                        lines.append(f"# TYPE {base} {kind}")
                        seen.add(base)
                    lines.append(f"{key} {val:g}")

            seen = set()
            for key, values in sorted(self._observations.items()):
                base = key.split("{")[0]
                if base not in seen:
                    lines.append(f"# TYPE {base} summary")
                    seen.add(base)
                lines.append(f"{key}_count {len(values)}")
                lines.append(f"{key}_sum {sum(values):.4f}")

        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._observations.clear()

    @staticmethod
    def _key(name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Singleton
_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get or create the metrics collector singleton."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
