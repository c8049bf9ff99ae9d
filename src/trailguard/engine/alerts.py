"""Alert generation and notification fan-out."""

from __future__ import annotations

import logging
from typing import Protocol
from typing import runtime_checkable

from trailguard.config import AlertConfig
from trailguard.models import ActivityEvent
from trailguard.models import SecurityAlert
from trailguard.models import SecurityEvent
from trailguard.models import Severity
from trailguard.storage import AlertRepository

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationChannel(Protocol):
    async def notify(self, alert: SecurityAlert) -> None: ...


class LoggingChannel:
    """Writes every alert to the ``trailguard.alerts`` logger at WARNING."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logging.getLogger("trailguard.alerts")

    async def notify(self, alert: SecurityAlert) -> None:
        self._log.warning(
            "Security alert severity=%s type=%s activity_id=%s: %s",
            alert.severity.value,
            alert.type,
            alert.activity_id,
            alert.description,
        )


class CollectingChannel:
    """Keeps alerts in memory for embedding applications and tests."""

    def __init__(self) -> None:
        self.alerts: list[SecurityAlert] = []

    async def notify(self, alert: SecurityAlert) -> None:
        self.alerts.append(alert)


def highest_severity(security_events: list[SecurityEvent]) -> SecurityEvent | None:
    """Return the most severe finding; the first one wins ties."""
    top: SecurityEvent | None = None
    for finding in security_events:
        if top is None or finding.severity.rank > top.severity.rank:
            top = finding
    return top


class AlertGenerator:
    """Persists an alert for medium-or-worse findings and notifies channels."""

    def __init__(
        self,
        repository: AlertRepository,
        *,
        config: AlertConfig | None = None,
        channels: list[NotificationChannel] | None = None,
    ) -> None:
        self._repo = repository
        self._config = config or AlertConfig()
        self._floor = Severity(self._config.alert_floor)
        self._channels = list(channels) if channels is not None else [LoggingChannel()]

    def add_channel(self, channel: NotificationChannel) -> None:
        self._channels.append(channel)

    async def generate_alert(
        self,
        event: ActivityEvent,
        security_events: list[SecurityEvent],
    ) -> SecurityAlert | None:
        top = highest_severity(security_events)
        if top is None or top.severity.rank < self._floor.rank:
            return None

        alert = await self._repo.add(
            SecurityAlert(
                activity_id=event.id,
                type=top.type,
                severity=top.severity,
                title=f"Security alert: {top.type.replace('_', ' ')}",
                description="; ".join(f.description for f in security_events),
                events=list(security_events),
            )
        )

        for channel in self._channels:
            try:
                await channel.notify(alert)
            except Exception:
                logger.exception(
                    "Notification channel %s failed for alert %s",
                    type(channel).__name__,
                    alert.id,
                )
        return alert
