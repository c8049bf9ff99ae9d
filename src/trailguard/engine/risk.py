"""Multi-factor risk scoring of activity events.

Score (0-100) is built from four additive factors and one multiplier:

- **type**: base weight by event type, exact match first, then the
  highest weight among the type's segments (``system.settings`` -> ``system``)
- **result**: failed logins and other failures add points, compounded by
  the actor's or IP's recent failures
- **origin**: suspicious, external, or missing IP addresses
- **volume**: ``properties.batch_size`` beyond the bulk threshold
- **time**: off-hours and non-business days multiply the total

``risk_level`` is ``score / 10`` rounded half-up, then bucketed into
low / medium / high / critical.
"""

from __future__ import annotations

import ipaddress
import math
import re
from dataclasses import dataclass
from dataclasses import field

from trailguard.config import RiskConfig
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import Severity

_SEGMENT_RE = re.compile(r"[._:/-]+")


def type_segments(event_type: str) -> list[str]:
    return [s for s in _SEGMENT_RE.split(event_type.lower()) if s]


def is_login_type(event_type: str) -> bool:
    return "login" in type_segments(event_type)


@dataclass(frozen=True)
class RiskContext:
    """Point-in-time inputs the scorer cannot derive from the event itself."""

    suspicious_ips: frozenset[str] = frozenset()
    recent_failures: int = 0


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: int
    classification: Severity
    factors: dict[str, float] = field(default_factory=dict)


class RiskScorer:
    """Computes the risk score of one event."""

    def __init__(self, config: RiskConfig | None = None) -> None:
        self._config = config or RiskConfig()
        self._weights = {k.lower(): v for k, v in self._config.type_weights.items()}
        self._internal = tuple(
            ipaddress.ip_network(net) for net in self._config.internal_networks
        )

    # -- factors --

    def type_weight(self, event_type: str) -> int:
        lowered = event_type.lower()
        if lowered in self._weights:
            return self._weights[lowered]
        matched = [self._weights[s] for s in type_segments(lowered) if s in self._weights]
        return max(matched) if matched else self._config.default_type_weight

    def _result_points(self, event: ActivityEvent, context: RiskContext) -> int:
        if event.result != ActivityResult.failed:
            return 0
        cfg = self._config
        points = (
            cfg.failed_login_points
            if is_login_type(event.type)
            else cfg.failed_action_points
        )
        compounded = min(
            max(context.recent_failures, 0) * cfg.recent_failure_points,
            cfg.recent_failure_cap,
        )
        return points + compounded

    def is_internal(self, ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(addr in net for net in self._internal if addr.version == net.version)

    def _origin_points(self, event: ActivityEvent, context: RiskContext) -> int:
        ip = event.ip_address
        if not ip:
            return self._config.missing_ip_points
        points = 0
        if ip in context.suspicious_ips:
            points += self._config.suspicious_ip_points
        if not self.is_internal(ip):
            points += self._config.external_ip_points
        return points

    def _volume_points(self, event: ActivityEvent) -> int:
        raw = event.properties.get("batch_size")
        try:
            batch_size = int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            return 0
        cfg = self._config
        if batch_size <= cfg.bulk_threshold:
            return 0
        steps = math.ceil(batch_size / cfg.bulk_threshold)
        return min(steps * cfg.bulk_points_per_step, cfg.bulk_points_cap)

    def is_off_hours(self, event: ActivityEvent) -> bool:
        cfg = self._config
        created = event.created_at
        if created.weekday() not in cfg.business_days:
            return True
        return not (cfg.business_hours_start <= created.hour < cfg.business_hours_end)

    # -- public --

    def assess(
        self,
        event: ActivityEvent,
        context: RiskContext | None = None,
    ) -> RiskAssessment:
        """Score *event* and return the per-factor breakdown."""
        ctx = context or RiskContext()
        factors: dict[str, float] = {
            "type": self.type_weight(event.type),
            "result": self._result_points(event, ctx),
            "origin": self._origin_points(event, ctx),
            "volume": self._volume_points(event),
        }
        raw = sum(factors.values())
        multiplier = self._config.off_hours_multiplier if self.is_off_hours(event) else 1.0
        factors["time_multiplier"] = multiplier

        score = int(min(max(math.floor(raw * multiplier + 0.5), 0), 100))
        level = self.to_level(score)
        return RiskAssessment(
            score=score,
            level=level,
            classification=self.classify(level),
            factors=factors,
        )

    def score(self, event: ActivityEvent, context: RiskContext | None = None) -> int:
        return self.assess(event, context).score

    @staticmethod
    def to_level(score: int) -> int:
        """Map a 0-100 score onto the 0-10 stored risk level (half-up)."""
        clamped = min(max(score, 0), 100)
        return min((clamped + 5) // 10, 10)

    @staticmethod
    def classify(level: int) -> Severity:
        if level < 3:
            return Severity.low
        if level <= 5:
            return Severity.medium
        if level <= 8:
            return Severity.high
        return Severity.critical
