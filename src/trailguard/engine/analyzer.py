"""Per-event security analysis: context, risk, findings, alerts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta

from trailguard.config import AlertConfig
from trailguard.engine.alerts import AlertGenerator
from trailguard.engine.ip_reputation import SuspiciousIPSet
from trailguard.engine.risk import is_login_type
from trailguard.engine.risk import RiskAssessment
from trailguard.engine.risk import RiskContext
from trailguard.engine.risk import RiskScorer
from trailguard.engine.security_events import SecurityEventDetector
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import SecurityAlert
from trailguard.models import SecurityEvent
from trailguard.storage import EventCriteria
from trailguard.storage import EventRepository

logger = logging.getLogger(__name__)

_RECOMMENDATIONS: dict[str, str] = {
    "login_failure": "Check the origin IP for brute-force attempts and consider lockout.",
    "privilege_escalation": "Confirm the privilege change was authorized.",
    "sensitive_data_access": "Verify the actor needs access to this data.",
    "system_config_change": "Review the configuration change against change records.",
    "suspicious_ip": "Consider blocking the IP address.",
    "bulk_operation": "Confirm the bulk operation was expected.",
}


@dataclass(frozen=True)
class AnalysisResult:
    assessment: RiskAssessment
    security_events: list[SecurityEvent] = field(default_factory=list)
    alert: SecurityAlert | None = None
    recommendations: list[str] = field(default_factory=list)


class SecurityAnalyzer:
    """Ties the risk scorer, finding detector and alert generator together."""

    def __init__(
        self,
        repository: EventRepository,
        alerts: AlertGenerator,
        *,
        scorer: RiskScorer | None = None,
        detector: SecurityEventDetector | None = None,
        suspicious_ips: SuspiciousIPSet | None = None,
        config: AlertConfig | None = None,
    ) -> None:
        self._repo = repository
        self._alerts = alerts
        self._scorer = scorer or RiskScorer()
        self._detector = detector or SecurityEventDetector()
        self._suspicious = suspicious_ips if suspicious_ips is not None else SuspiciousIPSet()
        self._window = timedelta(
            minutes=(config or AlertConfig()).recent_failure_window_minutes
        )

    @property
    def scorer(self) -> RiskScorer:
        return self._scorer

    async def build_context(self, event: ActivityEvent) -> RiskContext:
        """Snapshot suspicious IPs and count recent failed logins from the event's IP."""
        suspicious = self._suspicious.snapshot()
        if not event.ip_address:
            return RiskContext(suspicious_ips=suspicious)
        recent = await self._repo.query(
            EventCriteria(
                ip_address=event.ip_address,
                result=ActivityResult.failed,
                since=event.created_at - self._window,
                until=event.created_at,
            )
        )
        failures = sum(
            1 for e in recent if is_login_type(e.type) and e.id != event.id
        )
        return RiskContext(suspicious_ips=suspicious, recent_failures=failures)

    async def assess(
        self,
        event: ActivityEvent,
        context: RiskContext | None = None,
    ) -> RiskAssessment:
        ctx = context or await self.build_context(event)
        return self._scorer.assess(event, ctx)

    def detect_security_events(
        self,
        event: ActivityEvent,
        context: RiskContext | None = None,
    ) -> list[SecurityEvent]:
        return self._detector.detect(event, context)

    async def process(
        self,
        event: ActivityEvent,
        context: RiskContext | None = None,
    ) -> SecurityAlert | None:
        """Detect findings for a stored event and raise an alert if warranted."""
        ctx = context or await self.build_context(event)
        findings = self._detector.detect(event, ctx)
        if not findings:
            return None
        return await self._alerts.generate_alert(event, findings)

    async def analyze(self, event: ActivityEvent) -> AnalysisResult:
        """Full analysis of one stored event, including recommendations."""
        ctx = await self.build_context(event)
        assessment = self._scorer.assess(event, ctx)
        findings = self._detector.detect(event, ctx)
        alert = await self._alerts.generate_alert(event, findings) if findings else None
        return AnalysisResult(
            assessment=assessment,
            security_events=findings,
            alert=alert,
            recommendations=recommendations_for(findings),
        )


def recommendations_for(findings: list[SecurityEvent]) -> list[str]:
    seen: list[str] = []
    for finding in findings:
        text = _RECOMMENDATIONS.get(finding.type)
        if text is not None and text not in seen:
            seen.append(text)
    return seen
