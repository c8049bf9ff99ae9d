"""In-process repositories backed by plain dicts and lists."""

from __future__ import annotations

import asyncio
from datetime import datetime

from trailguard.models import ActivityEvent
from trailguard.models import PerformanceMetric
from trailguard.models import SecurityAlert
from trailguard.storage.base import EventCriteria


class InMemoryEventRepository:
    """Dict-backed event store keeping insertion order by id."""

    def __init__(self) -> None:
        self._events: dict[int, ActivityEvent] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    # -- write --

    async def add(self, event: ActivityEvent) -> ActivityEvent:
        async with self._lock:
            return self._insert(event)

    async def add_many(self, events: list[ActivityEvent]) -> list[ActivityEvent]:
        async with self._lock:
            return [self._insert(event) for event in events]

    async def put(self, event: ActivityEvent) -> None:
        if event.id is None:
            raise ValueError("put() requires an event with an id")
        async with self._lock:
            self._events[event.id] = event
            self._next_id = max(self._next_id, event.id + 1)

    async def delete(self, event_id: int) -> bool:
        async with self._lock:
            return self._events.pop(event_id, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._events.clear()
            self._next_id = 1

    def _insert(self, event: ActivityEvent) -> ActivityEvent:
        if event.id is None:
            event = event.model_copy(update={"id": self._next_id})
        elif event.id in self._events:
            raise ValueError(f"Activity {event.id} already exists")
        self._events[event.id] = event
        self._next_id = max(self._next_id, event.id + 1)
        return event

    # -- read --

    async def get(self, event_id: int) -> ActivityEvent | None:
        return self._events.get(event_id)

    async def query(
        self,
        criteria: EventCriteria | None = None,
        *,
        limit: int | None = None,
    ) -> list[ActivityEvent]:
        criteria = criteria or EventCriteria()
        results: list[ActivityEvent] = []
        for event_id in sorted(self._events):
            event = self._events[event_id]
            if not criteria.matches(event):
                continue
            results.append(event)
            if limit is not None and len(results) >= limit:
                break
        return results

    async def count(self, criteria: EventCriteria | None = None) -> int:
        criteria = criteria or EventCriteria()
        return sum(1 for event in self._events.values() if criteria.matches(event))


class InMemoryAlertRepository:
    def __init__(self) -> None:
        self._alerts: list[SecurityAlert] = []
        self._lock = asyncio.Lock()

    async def add(self, alert: SecurityAlert) -> SecurityAlert:
        async with self._lock:
            stored = alert.model_copy(update={"id": len(self._alerts) + 1})
            self._alerts.append(stored)
            return stored

    async def list(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[SecurityAlert]:
        alerts = [a for a in self._alerts if since is None or a.created_at >= since]
        return alerts[:limit] if limit is not None else alerts

    async def count(self) -> int:
        return len(self._alerts)

    async def clear(self) -> None:
        async with self._lock:
            self._alerts.clear()


class InMemoryMetricRepository:
    def __init__(self) -> None:
        self._metrics: list[PerformanceMetric] = []

    async def add(self, metric: PerformanceMetric) -> None:
        self._metrics.append(metric)

    async def list(self, *, metric_type: str | None = None) -> list[PerformanceMetric]:
        return [
            m
            for m in self._metrics
            if metric_type is None or m.metric_type == metric_type
        ]

    async def clear(self) -> None:
        self._metrics.clear()
