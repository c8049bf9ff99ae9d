"""Per-event security findings."""

from __future__ import annotations

from trailguard.config import RiskConfig
from trailguard.engine.risk import is_login_type
from trailguard.engine.risk import RiskContext
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import SecurityEvent
from trailguard.models import Severity

_PRIVILEGE_TYPES = frozenset({"roles.assign", "permissions.grant", "user.promote"})
_SENSITIVE_ACCESS_TYPES = frozenset({"users.view", "system.settings", "security.audit"})
_CONFIG_PREFIXES = ("system.", "config.")

# (minimum failures from one IP, severity), checked top-down.
_LOGIN_FAILURE_SEVERITY: tuple[tuple[int, Severity], ...] = (
    (10, Severity.critical),
    (5, Severity.high),
    (3, Severity.medium),
)


def login_failure_severity(failures: int) -> Severity:
    for minimum, severity in _LOGIN_FAILURE_SEVERITY:
        if failures >= minimum:
            return severity
    return Severity.low


class SecurityEventDetector:
    """Derives security findings from a single event and its context."""

    def __init__(self, risk_config: RiskConfig | None = None) -> None:
        self._bulk_threshold = (risk_config or RiskConfig()).bulk_threshold

    def detect(
        self,
        event: ActivityEvent,
        context: RiskContext | None = None,
    ) -> list[SecurityEvent]:
        ctx = context or RiskContext()
        found: list[SecurityEvent] = []
        event_type = event.type.lower()

        if is_login_type(event_type) and event.result == ActivityResult.failed:
            failures = ctx.recent_failures + 1
            found.append(
                SecurityEvent(
                    type="login_failure",
                    description=(
                        f"Failed login from {event.ip_address or 'unknown IP'} "
                        f"({failures} in the last hour)"
                    ),
                    severity=login_failure_severity(failures),
                )
            )

        if event_type in _PRIVILEGE_TYPES:
            found.append(
                SecurityEvent(
                    type="privilege_escalation",
                    description=f"Privilege change: {event.type}",
                    severity=Severity.high,
                )
            )

        if event_type in _SENSITIVE_ACCESS_TYPES:
            found.append(
                SecurityEvent(
                    type="sensitive_data_access",
                    description=f"Access to sensitive data: {event.type}",
                    severity=Severity.medium,
                )
            )

        if event_type.startswith(_CONFIG_PREFIXES):
            found.append(
                SecurityEvent(
                    type="system_config_change",
                    description=f"System configuration change: {event.type}",
                    severity=Severity.high,
                )
            )

        if event.ip_address and event.ip_address in ctx.suspicious_ips:
            found.append(
                SecurityEvent(
                    type="suspicious_ip",
                    description=f"Activity from suspicious IP {event.ip_address}",
                    severity=Severity.medium,
                )
            )

        if self._is_bulk(event):
            found.append(
                SecurityEvent(
                    type="bulk_operation",
                    description=f"Bulk operation: {event.description}",
                    severity=Severity.medium,
                )
            )

        return found

    def _is_bulk(self, event: ActivityEvent) -> bool:
        if "bulk" in event.description.lower():
            return True
        raw = event.properties.get("batch_size")
        try:
            return raw is not None and int(raw) > self._bulk_threshold
        except (TypeError, ValueError):
            return False
