"""Queued activity recording with per-actor ordering.

Tasks are sharded onto one ``asyncio.Queue`` per worker by a stable hash
of the actor (causer id, else IP, else ``system``), so events from the
same actor are recorded in submission order.  Transient storage failures
are retried inline with exponential backoff; validation failures and
exhausted retries go to a bounded dead-letter list.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zlib
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from trailguard.audit.recorder import EventRecorder
from trailguard.audit.recorder import validate_payload
from trailguard.config import QueueConfig
from trailguard.errors import QueueClosedError
from trailguard.errors import StorageError
from trailguard.errors import ValidationError
from trailguard.models import EventPayload
from trailguard.models import utcnow
from trailguard.observability import increment_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordTask:
    """One queued recording request."""

    payload: EventPayload
    submitted_at: float = field(default_factory=time.monotonic)

    @property
    def shard_key(self) -> str:
        return self.payload.causer_id or self.payload.ip_address or "system"


@dataclass(frozen=True)
class DeadLetter:
    task: RecordTask
    error: str
    attempts: int


@dataclass
class QueueStats:
    submitted: int = 0
    recorded: int = 0
    retried: int = 0
    suppressed: int = 0
    dead_lettered: int = 0
    dropped: int = 0


_STOP = object()


def fingerprint(payload: EventPayload) -> str:
    """Identity used for duplicate suppression (same minute, same origin)."""
    created = payload.created_at or utcnow()
    return "|".join(
        (
            payload.type,
            payload.causer_id or "",
            payload.subject_id or "",
            payload.ip_address or "",
            created.strftime("%Y-%m-%d %H:%M"),
        )
    )


class AsyncEventQueue:
    """Worker pool feeding ``EventRecorder.record``."""

    def __init__(
        self,
        recorder: EventRecorder,
        *,
        config: QueueConfig | None = None,
    ) -> None:
        self._recorder = recorder
        self._config = config or QueueConfig()
        if self._config.workers <= 0:
            raise ValueError("workers must be positive")
        per_worker = max(self._config.max_queue_size // self._config.workers, 1)
        self._queues: list[asyncio.Queue] = [
            asyncio.Queue(maxsize=per_worker) for _ in range(self._config.workers)
        ]
        self._workers: list[asyncio.Task] = []
        self._seen: dict[str, float] = {}
        self._running = False
        self.stats = QueueStats()
        # Oldest entries fall off once the cap is reached.
        self.dead_letters: deque[DeadLetter] = deque(maxlen=self._config.max_dead_letters)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index, queue), name=f"trailguard-worker-{index}")
            for index, queue in enumerate(self._queues)
        ]

    async def submit(
        self,
        payload: EventPayload | Mapping[str, Any],
        *,
        fallback_to_sync: bool = True,
    ) -> bool:
        """Queue *payload* for recording.

        Returns ``False`` when the event is suppressed as a duplicate.  When
        the queue is not running the event is recorded synchronously, unless
        *fallback_to_sync* is false, in which case ``QueueClosedError`` is
        raised.
        """
        validated = validate_payload(payload)
        if self._is_duplicate(validated):
            self.stats.suppressed += 1
            logger.debug("Suppressed duplicate activity type=%s", validated.type)
            return False

        if not self._running:
            if not fallback_to_sync:
                raise QueueClosedError("Activity queue is not running")
            logger.warning("Activity queue not running; recording synchronously")
            await self._recorder.record(validated)
            return True

        task = RecordTask(payload=validated)
        await self._queues[self._shard(task.shard_key)].put(task)
        self.stats.submitted += 1
        return True

    async def drain(self) -> None:
        """Wait until every queued task has been processed."""
        await asyncio.gather(*(queue.join() for queue in self._queues))

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the workers, finishing queued work first when *drain* is set."""
        if not self._running:
            return
        self._running = False
        if drain:
            await self.drain()
            for queue in self._queues:
                await queue.put(_STOP)
            await asyncio.gather(*self._workers)
        else:
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._discard_pending()
        self._workers = []

    # -- internal --

    def _discard_pending(self) -> None:
        """Empty the queues so ``drain()`` does not wait on dropped tasks."""
        dropped = 0
        for queue in self._queues:
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
                dropped += 1
        if dropped:
            self.stats.dropped += dropped
            logger.warning("Queue stopped without draining; dropped %d activities", dropped)

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._queues)

    def _is_duplicate(self, payload: EventPayload) -> bool:
        if not self._config.suppress_duplicates:
            return False
        now = time.monotonic()
        window = self._config.duplicate_window_seconds
        if len(self._seen) > self._config.max_queue_size:
            self._seen = {k: t for k, t in self._seen.items() if now - t < window}
        key = fingerprint(payload)
        seen_at = self._seen.get(key)
        if seen_at is not None and now - seen_at < window:
            return True
        self._seen[key] = now
        return False

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            task = await queue.get()
            try:
                if task is _STOP:
                    return
                await self._process(task)
            finally:
                queue.task_done()

    async def _process(self, task: RecordTask) -> None:
        cfg = self._config
        for attempt in range(1, cfg.max_attempts + 1):
            try:
                await self._recorder.record(task.payload)
                self.stats.recorded += 1
                return
            except ValidationError as exc:
                self._dead_letter(task, exc, attempt)
                return
            except StorageError as exc:
                if attempt >= cfg.max_attempts:
                    self._dead_letter(task, exc, attempt)
                    return
                delay = min(
                    cfg.backoff_base_seconds * 2 ** (attempt - 1),
                    cfg.backoff_max_seconds,
                )
                self.stats.retried += 1
                logger.warning(
                    "Recording failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    cfg.max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
            except Exception as exc:
                logger.exception("Unexpected failure recording activity")
                self._dead_letter(task, exc, attempt)
                return

    def _dead_letter(self, task: RecordTask, exc: Exception, attempts: int) -> None:
        self.stats.dead_lettered += 1
        increment_counter("activities.dead_lettered")
        self.dead_letters.append(DeadLetter(task=task, error=str(exc), attempts=attempts))
        logger.error(
            "Activity type=%s dead-lettered after %d attempt(s): %s",
            task.payload.type,
            attempts,
            exc,
        )
