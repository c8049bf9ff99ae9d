"""Repository interfaces and query criteria.

Components receive repositories by injection; nothing in trailguard
talks to a database directly.  All scans are keyset-paginated on the
monotonic event id so memory stays bounded by the chunk size.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from dataclasses import replace
from datetime import datetime
from typing import Protocol
from typing import runtime_checkable

from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import as_utc
from trailguard.models import PerformanceMetric
from trailguard.models import SecurityAlert


@dataclass(frozen=True)
class EventCriteria:
    """Filter for event queries.  ``since`` is inclusive, ``until`` exclusive."""

    causer_id: str | None = None
    ip_address: str | None = None
    type: str | None = None
    result: ActivityResult | None = None
    since: datetime | None = None
    until: datetime | None = None
    include_deleted: bool = True
    after_id: int | None = None

    def __post_init__(self) -> None:
        # Naive bounds are UTC, like naive event timestamps.
        object.__setattr__(self, "since", as_utc(self.since))
        object.__setattr__(self, "until", as_utc(self.until))

    def matches(self, event: ActivityEvent) -> bool:
        if self.after_id is not None and (event.id or 0) <= self.after_id:
            return False
        if self.causer_id is not None and event.causer_id != self.causer_id:
            return False
        if self.ip_address is not None and event.ip_address != self.ip_address:
            return False
        if self.type is not None and event.type != self.type:
            return False
        if self.result is not None and event.result != self.result:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at >= self.until:
            return False
        if not self.include_deleted and event.is_deleted:
            return False
        return True


@runtime_checkable
class EventRepository(Protocol):
    """Append-mostly store of signed activity events."""

    async def add(self, event: ActivityEvent) -> ActivityEvent: ...

    async def add_many(self, events: list[ActivityEvent]) -> list[ActivityEvent]: ...

    async def get(self, event_id: int) -> ActivityEvent | None: ...

    async def put(self, event: ActivityEvent) -> None: ...

    async def delete(self, event_id: int) -> bool: ...

    async def query(
        self,
        criteria: EventCriteria | None = None,
        *,
        limit: int | None = None,
    ) -> list[ActivityEvent]: ...

    async def count(self, criteria: EventCriteria | None = None) -> int: ...

    async def clear(self) -> None: ...


@runtime_checkable
class AlertRepository(Protocol):
    async def add(self, alert: SecurityAlert) -> SecurityAlert: ...

    async def list(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[SecurityAlert]: ...

    async def count(self) -> int: ...

    async def clear(self) -> None: ...


@runtime_checkable
class MetricRepository(Protocol):
    async def add(self, metric: PerformanceMetric) -> None: ...

    async def list(self, *, metric_type: str | None = None) -> list[PerformanceMetric]: ...

    async def clear(self) -> None: ...


async def iter_event_chunks(
    repository: EventRepository,
    criteria: EventCriteria | None = None,
    *,
    chunk_size: int = 1000,
) -> AsyncIterator[list[ActivityEvent]]:
    """Yield matching events in id order, ``chunk_size`` at a time."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    current = criteria or EventCriteria()
    while True:
        chunk = await repository.query(current, limit=chunk_size)
        if not chunk:
            return
        yield chunk
        if len(chunk) < chunk_size:
            return
        current = replace(current, after_id=chunk[-1].id)
