"""Redis-backed repositories.

Events are stored as JSON strings keyed by ``trailguard:event:{id}``.
A sorted set ``trailguard:events`` indexes every event by id (score = id)
so keyset pagination is a single ``ZRANGEBYSCORE``.  ``trailguard:event_time``
and ``trailguard:event_ip:{ip}`` score ids by ``created_at`` for windowed
queries.  Ids come from the ``trailguard:event_seq`` counter.  Alerts follow
the same layout under ``trailguard:alert``; metrics are appended to a list.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import datetime

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from trailguard.errors import StorageError
from trailguard.models import ActivityEvent
from trailguard.models import PerformanceMetric
from trailguard.models import SecurityAlert
from trailguard.storage.base import EventCriteria

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefixes
# ---------------------------------------------------------------------------

_PREFIX = "trailguard"
_EVENT_KEY = f"{_PREFIX}:event"
_EVENT_INDEX_KEY = f"{_PREFIX}:events"
_EVENT_SEQ_KEY = f"{_PREFIX}:event_seq"
_EVENT_TIME_KEY = f"{_PREFIX}:event_time"
_EVENT_IP_KEY = f"{_PREFIX}:event_ip"
_ALERT_KEY = f"{_PREFIX}:alert"
_ALERT_INDEX_KEY = f"{_PREFIX}:alerts"
_ALERT_SEQ_KEY = f"{_PREFIX}:alert_seq"
_METRICS_KEY = f"{_PREFIX}:metrics"

_SCAN_PAGE_SIZE = 500
_CLEAR_BATCH_SIZE = 100


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


async def _clear_prefix(redis: Redis, pattern: str) -> None:
    """Delete keys matching *pattern* in batches."""
    batch: list = []
    async for key in redis.scan_iter(match=pattern):
        batch.append(key)
        if len(batch) >= _CLEAR_BATCH_SIZE:
            await redis.delete(*batch)
            batch.clear()
    if batch:
        await redis.delete(*batch)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class RedisEventRepository:
    """Event repository on Redis strings plus sorted-set indexes.

    Besides the id index, every event is indexed by ``created_at`` and by
    origin IP so time- and IP-bounded queries only read the events inside
    their window.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    # -- write --

    async def add(self, event: ActivityEvent) -> ActivityEvent:
        try:
            stored = await self._assign_id(event)
            created = await self._redis.set(
                f"{_EVENT_KEY}:{stored.id}", stored.model_dump_json(), nx=True
            )
            if created:
                pipe = self._redis.pipeline()
                _index(pipe, stored)
                await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"Failed to store activity: {exc}") from exc
        if not created:
            raise ValueError(f"Activity {stored.id} already exists")
        return stored

    async def add_many(self, events: list[ActivityEvent]) -> list[ActivityEvent]:
        if not events:
            return []
        try:
            stored = [await self._assign_id(event) for event in events]
            pipe = self._redis.pipeline()
            for event in stored:
                pipe.set(f"{_EVENT_KEY}:{event.id}", event.model_dump_json())
                _index(pipe, event)
            await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"Failed to store activity batch: {exc}") from exc
        return stored

    async def put(self, event: ActivityEvent) -> None:
        if event.id is None:
            raise ValueError("put() requires an event with an id")
        try:
            previous = await self.get(event.id)
            pipe = self._redis.pipeline()
            if previous is not None:
                _unindex(pipe, previous)
            pipe.set(f"{_EVENT_KEY}:{event.id}", event.model_dump_json())
            _index(pipe, event)
            await pipe.execute()
            await self._bump_sequence(event.id)
        except RedisError as exc:
            raise StorageError(f"Failed to replace activity {event.id}: {exc}") from exc

    async def delete(self, event_id: int) -> bool:
        try:
            previous = await self.get(event_id)
            if previous is None:
                return False
            pipe = self._redis.pipeline()
            pipe.delete(f"{_EVENT_KEY}:{event_id}")
            _unindex(pipe, previous)
            deleted, *_ = await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"Failed to delete activity {event_id}: {exc}") from exc
        return bool(deleted)

    async def clear(self) -> None:
        await _clear_prefix(self._redis, f"{_EVENT_KEY}:*")
        await _clear_prefix(self._redis, f"{_EVENT_IP_KEY}:*")
        await self._redis.delete(_EVENT_INDEX_KEY, _EVENT_TIME_KEY, _EVENT_SEQ_KEY)

    async def _assign_id(self, event: ActivityEvent) -> ActivityEvent:
        if event.id is None:
            new_id = await self._redis.incr(_EVENT_SEQ_KEY)
            return event.model_copy(update={"id": int(new_id)})
        await self._bump_sequence(event.id)
        return event

    async def _bump_sequence(self, event_id: int) -> None:
        """Keep the id counter ahead of explicitly inserted ids."""
        current = await self._redis.get(_EVENT_SEQ_KEY)
        if current is None or int(current) < event_id:
            await self._redis.set(_EVENT_SEQ_KEY, event_id)

    # -- read --

    async def get(self, event_id: int) -> ActivityEvent | None:
        try:
            data = await self._redis.get(f"{_EVENT_KEY}:{event_id}")
        except RedisError as exc:
            raise StorageError(f"Failed to read activity {event_id}: {exc}") from exc
        if data is None:
            return None
        return ActivityEvent.model_validate_json(data)

    async def query(
        self,
        criteria: EventCriteria | None = None,
        *,
        limit: int | None = None,
    ) -> list[ActivityEvent]:
        results: list[ActivityEvent] = []
        try:
            async for event in self._iter_matching(criteria or EventCriteria()):
                results.append(event)
                if limit is not None and len(results) >= limit:
                    break
        except RedisError as exc:
            raise StorageError(f"Failed to query activities: {exc}") from exc
        return results

    async def count(self, criteria: EventCriteria | None = None) -> int:
        try:
            if criteria is None:
                return await self._redis.zcard(_EVENT_INDEX_KEY)
            if replace(criteria, since=None, until=None) == EventCriteria():
                low, high = _score_range(criteria)
                return await self._redis.zcount(_EVENT_TIME_KEY, low, high)
            total = 0
            async for _ in self._iter_matching(criteria):
                total += 1
            return total
        except RedisError as exc:
            raise StorageError(f"Failed to count activities: {exc}") from exc

    async def _iter_matching(self, criteria: EventCriteria) -> AsyncIterator[ActivityEvent]:
        """Yield matching events in id order, reading one page at a time."""
        async for page in self._candidate_pages(criteria):
            pipe = self._redis.pipeline()
            for event_id in page:
                pipe.get(f"{_EVENT_KEY}:{event_id}")
            for raw in await pipe.execute():
                if raw is None:
                    continue
                event = ActivityEvent.model_validate_json(raw)
                if criteria.matches(event):
                    yield event

    async def _candidate_pages(self, criteria: EventCriteria) -> AsyncIterator[list[int]]:
        if criteria.ip_address is not None:
            key = f"{_EVENT_IP_KEY}:{criteria.ip_address}"
        elif criteria.since is not None or criteria.until is not None:
            key = _EVENT_TIME_KEY
        else:
            async for page in self._id_pages(criteria.after_id or 0):
                yield page
            return

        # Secondary indexes hold only the ids inside the window.
        low, high = _score_range(criteria)
        raw_ids = await self._redis.zrangebyscore(key, low, high)
        after = criteria.after_id or 0
        ids = sorted(i for i in (int(_decode(r)) for r in raw_ids) if i > after)
        for start in range(0, len(ids), _SCAN_PAGE_SIZE):
            yield ids[start : start + _SCAN_PAGE_SIZE]

    async def _id_pages(self, cursor: int) -> AsyncIterator[list[int]]:
        while True:
            raw_ids = await self._redis.zrangebyscore(
                _EVENT_INDEX_KEY,
                f"({cursor}",
                "+inf",
                start=0,
                num=_SCAN_PAGE_SIZE,
            )
            if not raw_ids:
                return
            ids = [int(_decode(raw_id)) for raw_id in raw_ids]
            yield ids
            if len(ids) < _SCAN_PAGE_SIZE:
                return
            cursor = ids[-1]


def _index(pipe, event: ActivityEvent) -> None:
    member = str(event.id)
    score = event.created_at.timestamp()
    pipe.zadd(_EVENT_INDEX_KEY, {member: event.id})
    pipe.zadd(_EVENT_TIME_KEY, {member: score})
    if event.ip_address:
        pipe.zadd(f"{_EVENT_IP_KEY}:{event.ip_address}", {member: score})


def _unindex(pipe, event: ActivityEvent) -> None:
    member = str(event.id)
    pipe.zrem(_EVENT_INDEX_KEY, member)
    pipe.zrem(_EVENT_TIME_KEY, member)
    if event.ip_address:
        pipe.zrem(f"{_EVENT_IP_KEY}:{event.ip_address}", member)


def _score_range(criteria: EventCriteria) -> tuple[float | str, float | str]:
    """``created_at`` score bounds: ``since`` inclusive, ``until`` exclusive."""
    low = criteria.since.timestamp() if criteria.since is not None else "-inf"
    high = f"({criteria.until.timestamp()}" if criteria.until is not None else "+inf"
    return low, high


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class RedisAlertRepository:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def add(self, alert: SecurityAlert) -> SecurityAlert:
        try:
            new_id = int(await self._redis.incr(_ALERT_SEQ_KEY))
            stored = alert.model_copy(update={"id": new_id})
            pipe = self._redis.pipeline()
            pipe.set(f"{_ALERT_KEY}:{new_id}", stored.model_dump_json())
            pipe.zadd(_ALERT_INDEX_KEY, {str(new_id): stored.created_at.timestamp()})
            await pipe.execute()
        except RedisError as exc:
            raise StorageError(f"Failed to store alert: {exc}") from exc
        return stored

    async def list(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[SecurityAlert]:
        low = since.timestamp() if since is not None else "-inf"
        if limit is not None:
            ids = await self._redis.zrangebyscore(
                _ALERT_INDEX_KEY, low, "+inf", start=0, num=limit
            )
        else:
            ids = await self._redis.zrangebyscore(_ALERT_INDEX_KEY, low, "+inf")
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for raw_id in ids:
            pipe.get(f"{_ALERT_KEY}:{_decode(raw_id)}")
        raw_results = await pipe.execute()
        return [
            SecurityAlert.model_validate_json(raw)
            for raw in raw_results
            if raw is not None
        ]

    async def count(self) -> int:
        return await self._redis.zcard(_ALERT_INDEX_KEY)

    async def clear(self) -> None:
        await _clear_prefix(self._redis, f"{_ALERT_KEY}:*")
        await self._redis.delete(_ALERT_INDEX_KEY, _ALERT_SEQ_KEY)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class RedisMetricRepository:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def add(self, metric: PerformanceMetric) -> None:
        try:
            await self._redis.rpush(_METRICS_KEY, metric.model_dump_json())
        except RedisError as exc:
            raise StorageError(f"Failed to store metric: {exc}") from exc

    async def list(self, *, metric_type: str | None = None) -> list[PerformanceMetric]:
        raw_results = await self._redis.lrange(_METRICS_KEY, 0, -1)
        metrics = [PerformanceMetric.model_validate_json(raw) for raw in raw_results]
        if metric_type is None:
            return metrics
        return [m for m in metrics if m.metric_type == metric_type]

    async def clear(self) -> None:
        await self._redis.delete(_METRICS_KEY)
