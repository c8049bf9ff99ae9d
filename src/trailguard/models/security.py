"""Security analysis data models: alerts, anomalies, pattern summaries."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from trailguard.models.activity import utcnow


class Severity(str, Enum):
    """Ordered severity / risk classification."""

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.low: 0,
    Severity.medium: 1,
    Severity.high: 2,
    Severity.critical: 3,
}


class SecurityEvent(BaseModel):
    """A per-event security finding."""

    model_config = {"frozen": True}

    type: str = Field(description="Finding category, e.g. 'login_failure'.")
    description: str = Field(description="Human-readable explanation.")
    severity: Severity = Field(description="How serious the finding is.")


class SecurityAlert(BaseModel):
    """A persisted alert raised for a medium-or-worse finding."""

    model_config = {"frozen": True}

    id: int | None = Field(default=None, description="Repository-assigned id.")
    activity_id: int | None = Field(
        default=None,
        description="Activity event that triggered the alert.",
    )
    type: str = Field(description="Type of the highest-severity finding.")
    severity: Severity = Field(description="Alert severity.")
    title: str = Field(default="", description="Short alert title.")
    description: str = Field(default="", description="Summary of the findings.")
    events: list[SecurityEvent] = Field(
        default_factory=list,
        description="All findings that contributed to the alert.",
    )
    created_at: datetime = Field(default_factory=utcnow)


class Anomaly(BaseModel):
    """A behavioural anomaly found over a time window."""

    model_config = {"frozen": True}

    type: str = Field(description="Anomaly category, e.g. 'high_frequency'.")
    severity: Severity = Field(description="How serious the anomaly is.")
    description: str = Field(description="Human-readable explanation.")
    actor_id: str | None = Field(default=None)
    ip_address: str | None = Field(default=None)
    details: dict[str, Any] = Field(default_factory=dict)


class SuspiciousIP(BaseModel):
    """An IP address whose reputation score crossed the threshold."""

    model_config = {"frozen": True}

    ip_address: str
    score: int = Field(ge=0, le=100)
    failed_logins: int = 0
    targeted_accounts: int = 0
    brute_force: bool = False
    total_events: int = 0
    reasons: list[str] = Field(default_factory=list)


class IPStat(BaseModel):
    """Usage statistics for one IP address within a pattern window."""

    ip_address: str
    count: int
    failed: int = 0


class PatternSummary(BaseModel):
    """Behavioural summary for one actor (or everyone) over a time range."""

    actor_id: str | None = None
    time_range: str
    since: datetime
    until: datetime
    total_activities: int = 0
    type_distribution: dict[str, int] = Field(default_factory=dict)
    hourly_distribution: list[int] = Field(default_factory=lambda: [0] * 24)
    daily_distribution: dict[str, int] = Field(default_factory=dict)
    ip_addresses: list[IPStat] = Field(default_factory=list)
    average_risk_level: float = 0.0
    anomaly_score: float = Field(default=0.0, ge=0.0, lt=1.0)


class FailedLoginSummary(BaseModel):
    """Failed-login monitoring report over the last 24 hours."""

    total_failures: int = 0
    unique_ips: int = 0
    peak_hours: list[int] = Field(default_factory=list)
    top_ips: list[IPStat] = Field(default_factory=list)
    brute_force: list[Anomaly] = Field(default_factory=list)
    credential_stuffing: list[Anomaly] = Field(default_factory=list)


class SecurityReport(BaseModel):
    """Aggregated security posture over a time range."""

    time_range: str
    since: datetime
    until: datetime
    total_activities: int = 0
    failed_activities: int = 0
    by_risk: dict[str, int] = Field(default_factory=dict)
    top_risks: list[dict[str, Any]] = Field(default_factory=list)
    top_actors: list[dict[str, Any]] = Field(default_factory=list)
    suspicious_ips: list[SuspiciousIP] = Field(default_factory=list)
    anomalies: list[Anomaly] = Field(default_factory=list)
    risk_trend: str = "stable"
    recommendations: list[str] = Field(default_factory=list)
