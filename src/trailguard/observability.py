"""In-process observability: latency aggregates, counters, metric persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

from trailguard.models import PerformanceMetric
from trailguard.storage import MetricRepository

logger = logging.getLogger(__name__)


@dataclass
class LatencySummary:
    """Aggregated latency metrics for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0


class _LatencyRecorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, LatencySummary] = {}

    def record(self, *, operation: str, duration_ms: float, ok: bool) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            summary = self._stats.setdefault(operation, LatencySummary())
            summary.count += 1
            if not ok:
                summary.error_count += 1
            summary.total_ms += normalized
            if summary.count == 1:
                summary.min_ms = summary.max_ms = normalized
            else:
                summary.min_ms = min(summary.min_ms, normalized)
                summary.max_ms = max(summary.max_ms, normalized)

        logger.debug(
            "latency operation=%s duration_ms=%.3f ok=%s",
            operation,
            normalized,
            ok,
        )

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "count": summary.count,
                    "error_count": summary.error_count,
                    "avg_ms": round(
                        summary.total_ms / summary.count if summary.count else 0.0,
                        3,
                    ),
                    "min_ms": round(summary.min_ms, 3),
                    "max_ms": round(summary.max_ms, 3),
                }
                for operation, summary in sorted(self._stats.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


class _Counters:
    def __init__(self) -> None:
        self._lock = Lock()
        self._values: dict[str, int] = {}

    def increment(self, name: str, amount: int = 1) -> int:
        with self._lock:
            value = self._values.get(name, 0) + amount
            self._values[name] = value
            return value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._values.items()))

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


_RECORDER = _LatencyRecorder()
_COUNTERS = _Counters()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    _RECORDER.record(operation=operation, duration_ms=duration_ms, ok=ok)


def increment_counter(name: str, amount: int = 1) -> int:
    """Atomically bump a named counter and return its new value."""
    return _COUNTERS.increment(name, amount)


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.snapshot()


def counters_snapshot() -> dict[str, int]:
    return _COUNTERS.snapshot()


def reset_metrics() -> None:
    """Clear latency aggregates and counters (test helper)."""
    _RECORDER.reset()
    _COUNTERS.reset()


class MetricsRecorder:
    """Persists performance metrics; failures never reach the caller."""

    def __init__(self, repository: MetricRepository | None, *, enabled: bool = True) -> None:
        self._repository = repository
        self._enabled = enabled and repository is not None

    async def record(
        self,
        metric_type: str,
        operation: str,
        value: float,
        unit: str = "ms",
    ) -> None:
        if not self._enabled:
            return
        assert self._repository is not None
        try:
            await self._repository.add(
                PerformanceMetric(
                    metric_type=metric_type,
                    operation=operation,
                    value=value,
                    unit=unit,
                )
            )
        except Exception:
            logger.debug(
                "Failed to persist metric %s/%s", metric_type, operation, exc_info=True
            )
