"""Storage subsystem: repository interfaces and implementations."""

from trailguard.storage.base import AlertRepository
from trailguard.storage.base import EventCriteria
from trailguard.storage.base import EventRepository
from trailguard.storage.base import iter_event_chunks
from trailguard.storage.base import MetricRepository
from trailguard.storage.memory import InMemoryAlertRepository
from trailguard.storage.memory import InMemoryEventRepository
from trailguard.storage.memory import InMemoryMetricRepository
from trailguard.storage.redis_store import RedisAlertRepository
from trailguard.storage.redis_store import RedisEventRepository
from trailguard.storage.redis_store import RedisMetricRepository

__all__ = [
    "AlertRepository",
    "EventCriteria",
    "EventRepository",
    "InMemoryAlertRepository",
    "InMemoryEventRepository",
    "InMemoryMetricRepository",
    "MetricRepository",
    "RedisAlertRepository",
    "RedisEventRepository",
    "RedisMetricRepository",
    "iter_event_chunks",
]
