"""Anomaly and pattern detection over stored activity events.

Every scan goes through ``iter_event_chunks`` so memory is bounded by
the configured chunk size; only per-key aggregates are kept between
chunks.  Suspicious IPs found by ``check_suspicious_ips()`` are fed
back into the shared ``SuspiciousIPSet`` used by the risk scorer.
"""

from __future__ import annotations

import logging
import re
import statistics
from collections import Counter
from collections import defaultdict
from collections.abc import AsyncIterator
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta

from trailguard.config import DetectionConfig
from trailguard.engine.ip_reputation import SuspiciousIPSet
from trailguard.engine.risk import is_login_type
from trailguard.engine.risk import RiskScorer
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import Anomaly
from trailguard.models import FailedLoginSummary
from trailguard.models import IPStat
from trailguard.models import PatternSummary
from trailguard.models import SecurityReport
from trailguard.models import Severity
from trailguard.models import SuspiciousIP
from trailguard.models import utcnow
from trailguard.storage import EventCriteria
from trailguard.storage import EventRepository
from trailguard.storage import iter_event_chunks

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*(\d+)\s*([hdw])\s*$", re.IGNORECASE)
_RANGE_UNITS = {"h": "hours", "d": "days", "w": "weeks"}
_WEEKDAYS = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def parse_time_range(time_range: str | timedelta) -> timedelta:
    """Parse ``'1d'``, ``'7d'``, ``'30d'``, ``'90d'`` (or ``'12h'``, ``'2w'``)."""
    if isinstance(time_range, timedelta):
        if time_range <= timedelta(0):
            raise ValueError("time_range must be positive")
        return time_range
    match = _RANGE_RE.match(time_range)
    if match is None or int(match.group(1)) <= 0:
        raise ValueError(f"Unsupported time range: {time_range!r}")
    return timedelta(**{_RANGE_UNITS[match.group(2).lower()]: int(match.group(1))})


def _range_label(time_range: str | timedelta) -> str:
    if isinstance(time_range, timedelta):
        return f"{int(time_range.total_seconds() // 3600)}h"
    return time_range.strip().lower()


def max_in_window(timestamps: list[datetime], window: timedelta) -> int:
    """Largest number of timestamps falling inside any rolling *window*."""
    ordered = sorted(timestamps)
    best = 0
    start = 0
    for end, current in enumerate(ordered):
        while current - ordered[start] >= window:
            start += 1
        best = max(best, end - start + 1)
    return best


def _login_identity(event: ActivityEvent) -> str | None:
    for key in ("username", "email", "login"):
        value = event.properties.get(key)
        if isinstance(value, str) and value:
            return value.lower()
    return event.causer_id


def _is_failed_login(event: ActivityEvent) -> bool:
    return event.result == ActivityResult.failed and is_login_type(event.type)


@dataclass
class _IPAggregate:
    total: int = 0
    failures: list[datetime] = field(default_factory=list)
    accounts: set[str] = field(default_factory=set)
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    def add(self, event: ActivityEvent) -> None:
        self.total += 1
        created = event.created_at
        if self.first_seen is None or created < self.first_seen:
            self.first_seen = created
        if self.last_seen is None or created > self.last_seen:
            self.last_seen = created
        if _is_failed_login(event):
            self.failures.append(created)
            identity = _login_identity(event)
            if identity is not None:
                self.accounts.add(identity)


@dataclass
class _WindowAggregate:
    """Per-actor, per-IP and per-identity state for one detection window."""

    off_hours: Callable[[datetime], bool]
    actor_counts: Counter[str] = field(default_factory=Counter)
    actor_off_hours: Counter[str] = field(default_factory=Counter)
    actor_types: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    actor_origins: dict[str, list[tuple[datetime, str]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    ip_failures: dict[str, list[datetime]] = field(default_factory=lambda: defaultdict(list))
    identity_failures: dict[str, list[str]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def add(self, event: ActivityEvent) -> None:
        if event.causer_id is not None:
            actor = event.causer_id
            self.actor_counts[actor] += 1
            if self.off_hours(event.created_at):
                self.actor_off_hours[actor] += 1
            self.actor_types[actor].append(event.type.lower())
            if event.ip_address:
                self.actor_origins[actor].append((event.created_at, event.ip_address))
        if _is_failed_login(event):
            ip = event.ip_address or "unknown"
            self.ip_failures[ip].append(event.created_at)
            identity = _login_identity(event)
            if identity is not None:
                self.identity_failures[identity].append(ip)


class AnomalyDetector:
    """Window-based anomaly, reputation and pattern analysis."""

    def __init__(
        self,
        repository: EventRepository,
        *,
        config: DetectionConfig | None = None,
        risk_scorer: RiskScorer | None = None,
        suspicious_ips: SuspiciousIPSet | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._config = config or DetectionConfig()
        self._scorer = risk_scorer or RiskScorer()
        self._suspicious = suspicious_ips if suspicious_ips is not None else SuspiciousIPSet()
        self._clock = clock

    @property
    def suspicious_ips(self) -> SuspiciousIPSet:
        return self._suspicious

    async def _scan(self, criteria: EventCriteria) -> AsyncIterator[ActivityEvent]:
        async for chunk in iter_event_chunks(
            self._repo, criteria, chunk_size=self._config.chunk_size
        ):
            for event in chunk:
                yield event

    def _is_off_hours(self, moment: datetime) -> bool:
        cfg = self._config
        return moment.hour >= cfg.off_hours_start or moment.hour < cfg.off_hours_end

    # ------------------------------------------------------------------
    # Window anomalies
    # ------------------------------------------------------------------

    async def detect_anomalies(
        self,
        window: timedelta = timedelta(hours=1),
        *,
        until: datetime | None = None,
        actor_id: str | None = None,
    ) -> list[Anomaly]:
        """Scan ``[until - window, until)`` and report behavioural anomalies.

        At most one anomaly of each kind is reported per actor (or per IP /
        per username for login-based kinds).
        """
        end = until or self._clock()
        criteria = EventCriteria(since=end - window, until=end, causer_id=actor_id)
        aggregate = _WindowAggregate(self._is_off_hours)
        async for event in self._scan(criteria):
            aggregate.add(event)
        return self._window_anomalies(aggregate)

    def detect_anomalies_in(self, events: Iterable[ActivityEvent]) -> list[Anomaly]:
        """Run the window checks over *events* as given, without storage.

        Every event counts, so the caller picks the window.  The sequence
        check follows iteration order; pass events oldest first.
        """
        aggregate = _WindowAggregate(self._is_off_hours)
        for event in events:
            aggregate.add(event)
        return self._window_anomalies(aggregate)

    def _window_anomalies(self, aggregate: _WindowAggregate) -> list[Anomaly]:
        cfg = self._config
        anomalies: list[Anomaly] = []
        anomalies.extend(self._frequency_anomalies(aggregate.actor_counts))
        anomalies.extend(self._brute_force_anomalies(aggregate.ip_failures))
        anomalies.extend(self._credential_stuffing_anomalies(aggregate.identity_failures))

        for actor, total in sorted(aggregate.actor_counts.items()):
            ratio = aggregate.actor_off_hours[actor] / total
            if total >= cfg.off_hours_min_events and ratio > cfg.off_hours_ratio:
                anomalies.append(
                    Anomaly(
                        type="off_hours_pattern",
                        severity=Severity.medium,
                        description=(
                            f"{ratio:.0%} of activity by {actor} happened off hours"
                        ),
                        actor_id=actor,
                        details={"ratio": round(ratio, 3), "total": total},
                    )
                )

        for actor, origins in sorted(aggregate.actor_origins.items()):
            switch = self._ip_switch(origins)
            if switch is not None:
                anomalies.append(
                    Anomaly(
                        type="ip_switch",
                        severity=Severity.medium,
                        description=(
                            f"{actor} used {len(switch)} IP addresses within "
                            f"{cfg.ip_switch_window_minutes} minutes"
                        ),
                        actor_id=actor,
                        details={"ip_addresses": sorted(switch)},
                    )
                )

        for actor, types in sorted(aggregate.actor_types.items()):
            sequence = self._dangerous_sequence(types)
            if sequence is not None:
                anomalies.append(
                    Anomaly(
                        type="unusual_sequence",
                        severity=Severity.high,
                        description=f"{actor} performed {' -> '.join(sequence)}",
                        actor_id=actor,
                        details={"sequence": list(sequence)},
                    )
                )

        return anomalies

    def _frequency_anomalies(self, actor_counts: Counter[str]) -> list[Anomaly]:
        threshold = self._config.frequency_threshold
        return [
            Anomaly(
                type="high_frequency",
                severity=Severity.high,
                description=f"{actor} performed {count} activities in the window",
                actor_id=actor,
                details={"count": count, "threshold": threshold},
            )
            for actor, count in sorted(actor_counts.items())
            if count >= threshold
        ]

    def _brute_force_anomalies(
        self,
        ip_failures: dict[str, list[datetime]],
    ) -> list[Anomaly]:
        cfg = self._config
        window = timedelta(minutes=cfg.brute_force_window_minutes)
        anomalies: list[Anomaly] = []
        for ip, failures in sorted(ip_failures.items()):
            burst = max_in_window(failures, window)
            if burst < cfg.brute_force_threshold:
                continue
            severity = (
                Severity.critical
                if burst >= cfg.brute_force_threshold * 2
                else Severity.high
            )
            anomalies.append(
                Anomaly(
                    type="brute_force",
                    severity=severity,
                    description=(
                        f"{burst} failed logins from {ip} within "
                        f"{cfg.brute_force_window_minutes} minutes"
                    ),
                    ip_address=ip,
                    details={"attempts": burst, "total_failures": len(failures)},
                )
            )
        return anomalies

    def _credential_stuffing_anomalies(
        self,
        identity_failures: dict[str, list[str]],
    ) -> list[Anomaly]:
        cfg = self._config
        anomalies: list[Anomaly] = []
        for identity, ips in sorted(identity_failures.items()):
            distinct = set(ips)
            if (
                len(distinct) >= cfg.credential_stuffing_min_ips
                and len(ips) >= cfg.credential_stuffing_min_attempts
            ):
                anomalies.append(
                    Anomaly(
                        type="credential_stuffing",
                        severity=Severity.critical,
                        description=(
                            f"{len(ips)} failed logins for {identity} from "
                            f"{len(distinct)} IP addresses"
                        ),
                        actor_id=identity,
                        details={
                            "attempts": len(ips),
                            "ip_addresses": sorted(distinct),
                        },
                    )
                )
        return anomalies

    def _ip_switch(self, origins: list[tuple[datetime, str]]) -> set[str] | None:
        window = timedelta(minutes=self._config.ip_switch_window_minutes)
        ordered = sorted(origins)
        start = 0
        for end, (moment, _) in enumerate(ordered):
            while moment - ordered[start][0] >= window:
                start += 1
            ips = {ip for _, ip in ordered[start : end + 1]}
            if len(ips) > 1:
                return ips
        return None

    def _dangerous_sequence(self, types: list[str]) -> tuple[str, ...] | None:
        for sequence in self._config.dangerous_sequences:
            size = len(sequence)
            for i in range(len(types) - size + 1):
                if tuple(types[i : i + size]) == sequence:
                    return sequence
        return None

    # ------------------------------------------------------------------
    # IP reputation
    # ------------------------------------------------------------------

    async def check_suspicious_ips(self) -> list[SuspiciousIP]:
        """Score every IP seen in the lookback period.

        IPs at or above the threshold are returned highest score first and
        added to the shared suspicious-IP set.
        """
        cfg = self._config
        now = self._clock()
        criteria = EventCriteria(
            since=now - timedelta(days=cfg.suspicious_ip_lookback_days),
            until=now + timedelta(seconds=1),
        )

        aggregates: dict[str, _IPAggregate] = defaultdict(_IPAggregate)
        async for event in self._scan(criteria):
            if event.ip_address:
                aggregates[event.ip_address].add(event)

        results: list[SuspiciousIP] = []
        for ip, aggregate in aggregates.items():
            scored = self._score_ip(ip, aggregate)
            if scored.score >= cfg.suspicious_ip_threshold:
                results.append(scored)
        results.sort(key=lambda item: (-item.score, item.ip_address))

        if results:
            self._suspicious.update(item.ip_address for item in results)
            logger.info(
                "Suspicious IP scan flagged %d address(es); set version=%d",
                len(results),
                self._suspicious.version,
            )
        return results

    def _score_ip(self, ip: str, aggregate: _IPAggregate) -> SuspiciousIP:
        cfg = self._config
        reasons: list[str] = []
        score = 0

        failures = len(aggregate.failures)
        if failures:
            score += min(failures * cfg.ip_failure_points, cfg.ip_failure_cap)
            reasons.append(f"{failures} failed logins")

        burst = max_in_window(
            aggregate.failures, timedelta(minutes=cfg.brute_force_window_minutes)
        )
        brute_force = burst >= cfg.brute_force_threshold
        if brute_force:
            score += cfg.ip_brute_force_points
            reasons.append(f"brute force burst of {burst}")

        accounts = len(aggregate.accounts)
        if accounts:
            score += min(accounts * cfg.ip_account_points, cfg.ip_account_cap)
            reasons.append(f"{accounts} account(s) targeted")

        if not self._scorer.is_internal(ip):
            score += cfg.ip_external_points
            reasons.append("external origin")

        if aggregate.first_seen is not None and aggregate.last_seen is not None:
            hours = max(
                (aggregate.last_seen - aggregate.first_seen).total_seconds() / 3600,
                1.0,
            )
            if aggregate.total / hours >= cfg.ip_high_rate_per_hour:
                score += cfg.ip_high_rate_points
                reasons.append("high request rate")

        return SuspiciousIP(
            ip_address=ip,
            score=min(score, 100),
            failed_logins=failures,
            targeted_accounts=accounts,
            brute_force=brute_force,
            total_events=aggregate.total,
            reasons=reasons,
        )

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    async def identify_patterns(
        self,
        actor_id: str | None = None,
        time_range: str | timedelta = "7d",
    ) -> PatternSummary:
        """Summarize behaviour over *time_range* and score its deviation.

        The anomaly score compares the window's activity count with the
        same-length windows immediately before it: ``|z| / (|z| + k)``
        with the baseline standard deviation floored at 1.
        """
        cfg = self._config
        span = parse_time_range(time_range)
        until = self._clock()
        since = until - span

        type_counts: Counter[str] = Counter()
        hourly = [0] * 24
        daily: Counter[str] = Counter()
        ip_counts: Counter[str] = Counter()
        ip_failed: Counter[str] = Counter()
        total = 0
        risk_sum = 0

        async for event in self._scan(
            EventCriteria(causer_id=actor_id, since=since, until=until)
        ):
            total += 1
            risk_sum += event.risk_level
            type_counts[event.type] += 1
            hourly[event.created_at.hour] += 1
            daily[_WEEKDAYS[event.created_at.weekday()]] += 1
            if event.ip_address:
                ip_counts[event.ip_address] += 1
                if event.result == ActivityResult.failed:
                    ip_failed[event.ip_address] += 1

        baseline: list[int] = []
        for i in range(1, cfg.baseline_windows + 1):
            window_end = since - span * (i - 1)
            baseline.append(
                await self._repo.count(
                    EventCriteria(
                        causer_id=actor_id,
                        since=window_end - span,
                        until=window_end,
                    )
                )
            )

        return PatternSummary(
            actor_id=actor_id,
            time_range=_range_label(time_range),
            since=since,
            until=until,
            total_activities=total,
            type_distribution=dict(type_counts.most_common()),
            hourly_distribution=hourly,
            daily_distribution={day: daily[day] for day in _WEEKDAYS if daily[day]},
            ip_addresses=[
                IPStat(ip_address=ip, count=count, failed=ip_failed[ip])
                for ip, count in ip_counts.most_common()
            ],
            average_risk_level=round(risk_sum / total, 2) if total else 0.0,
            anomaly_score=self.anomaly_score(total, baseline),
        )

    def anomaly_score(self, current: int, baseline: list[int]) -> float:
        mean = statistics.fmean(baseline) if baseline else 0.0
        std = statistics.pstdev(baseline) if len(baseline) > 1 else 0.0
        z = abs(current - mean) / max(std, 1.0)
        # Rounding must not reach 1.0 for very large deviations.
        return min(round(z / (z + self._config.anomaly_score_k), 4), 0.9999)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def monitor_failed_logins(self) -> FailedLoginSummary:
        """Summarize failed logins over the last 24 hours."""
        until = self._clock()
        since = until - timedelta(hours=24)

        total = 0
        hours: Counter[int] = Counter()
        ip_counts: Counter[str] = Counter()
        ip_failures: dict[str, list[datetime]] = defaultdict(list)
        identity_failures: dict[str, list[str]] = defaultdict(list)

        criteria = EventCriteria(
            since=since, until=until, result=ActivityResult.failed
        )
        async for event in self._scan(criteria):
            if not is_login_type(event.type):
                continue
            total += 1
            hours[event.created_at.hour] += 1
            ip = event.ip_address or "unknown"
            ip_counts[ip] += 1
            ip_failures[ip].append(event.created_at)
            identity = _login_identity(event)
            if identity is not None:
                identity_failures[identity].append(ip)

        return FailedLoginSummary(
            total_failures=total,
            unique_ips=len(ip_counts),
            peak_hours=[hour for hour, _ in hours.most_common(3)],
            top_ips=[
                IPStat(ip_address=ip, count=count, failed=count)
                for ip, count in ip_counts.most_common(10)
            ],
            brute_force=self._brute_force_anomalies(ip_failures),
            credential_stuffing=self._credential_stuffing_anomalies(
                identity_failures
            ),
        )

    async def security_report(
        self,
        time_range: str | timedelta = "7d",
    ) -> SecurityReport:
        """Aggregate risk, actors, IPs and anomalies over *time_range*."""
        span = parse_time_range(time_range)
        until = self._clock()
        since = until - span

        total = 0
        failed = 0
        risk_sum = 0
        by_risk: Counter[str] = Counter()
        actor_risk: Counter[str] = Counter()
        actor_counts: Counter[str] = Counter()
        top: list[ActivityEvent] = []

        async for event in self._scan(EventCriteria(since=since, until=until)):
            total += 1
            risk_sum += event.risk_level
            if event.result == ActivityResult.failed:
                failed += 1
            by_risk[RiskScorer.classify(event.risk_level).value] += 1
            if event.causer_id is not None:
                actor_risk[event.causer_id] += event.risk_level
                actor_counts[event.causer_id] += 1
            top.append(event)
            top.sort(key=lambda e: (-e.risk_level, -(e.id or 0)))
            del top[10:]

        previous_total = 0
        previous_risk = 0
        async for event in self._scan(EventCriteria(since=since - span, until=since)):
            previous_total += 1
            previous_risk += event.risk_level

        current_avg = risk_sum / total if total else 0.0
        previous_avg = previous_risk / previous_total if previous_total else 0.0

        report = SecurityReport(
            time_range=_range_label(time_range),
            since=since,
            until=until,
            total_activities=total,
            failed_activities=failed,
            by_risk={level.value: by_risk[level.value] for level in Severity},
            top_risks=[
                {
                    "id": e.id,
                    "type": e.type,
                    "causer_id": e.causer_id,
                    "risk_level": e.risk_level,
                    "created_at": e.created_at.isoformat(),
                }
                for e in top
            ],
            top_actors=[
                {
                    "causer_id": actor,
                    "total_risk": risk,
                    "activities": actor_counts[actor],
                }
                for actor, risk in actor_risk.most_common(10)
            ],
            suspicious_ips=await self.check_suspicious_ips(),
            anomalies=await self.detect_anomalies(span, until=until),
            risk_trend=trend_direction(current_avg, previous_avg),
        )
        report.recommendations = build_recommendations(report)
        return report


def trend_direction(current: float, previous: float) -> str:
    """``increasing`` / ``decreasing`` beyond a 10% change, else ``stable``."""
    if previous == 0:
        return "increasing" if current > 0 else "stable"
    change = (current - previous) / previous
    if change > 0.1:
        return "increasing"
    if change < -0.1:
        return "decreasing"
    return "stable"


def build_recommendations(report: SecurityReport) -> list[str]:
    recommendations: list[str] = []
    kinds = {anomaly.type for anomaly in report.anomalies}
    if report.suspicious_ips:
        recommendations.append(
            f"Block or rate-limit {len(report.suspicious_ips)} suspicious IP address(es)."
        )
    if "brute_force" in kinds or "credential_stuffing" in kinds:
        recommendations.append(
            "Enforce account lockout and multi-factor authentication for failed logins."
        )
    if report.by_risk.get(Severity.critical.value, 0):
        recommendations.append("Review critical-risk activities immediately.")
    if "off_hours_pattern" in kinds:
        recommendations.append("Restrict administrative access outside business hours.")
    if "unusual_sequence" in kinds or "ip_switch" in kinds:
        recommendations.append("Verify recent sessions of accounts with unusual behaviour.")
    if report.risk_trend == "increasing":
        recommendations.append("Risk is trending up; increase monitoring frequency.")
    return recommendations
