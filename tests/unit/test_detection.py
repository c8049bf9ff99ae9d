"""Unit tests for anomaly detection, IP reputation, patterns and reports."""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from trailguard.config import DetectionConfig
from trailguard.engine import AnomalyDetector
from trailguard.engine import parse_time_range
from trailguard.engine import SuspiciousIPSet
from trailguard.engine.detection import max_in_window
from trailguard.engine.detection import trend_direction
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import Severity
from trailguard.storage import InMemoryEventRepository

# Wednesday, business hours.
BASE = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


def _event(**overrides) -> ActivityEvent:
    data = {
        "type": "users.view",
        "description": "Viewed users",
        "causer_id": "alice",
        "ip_address": "10.0.0.5",
        "created_at": BASE,
    }
    data.update(overrides)
    return ActivityEvent(**data)


def _failed_login(ip: str, at: datetime, username: str = "admin") -> ActivityEvent:
    return _event(
        type="login",
        description=f"Failed login for {username}",
        causer_id=None,
        ip_address=ip,
        result=ActivityResult.failed,
        properties={"username": username},
        created_at=at,
    )


async def _make_detector(
    events: list[ActivityEvent],
    *,
    now: datetime,
    suspicious: SuspiciousIPSet | None = None,
    **config,
) -> AnomalyDetector:
    repo = InMemoryEventRepository()
    await repo.add_many(events)
    return AnomalyDetector(
        repo,
        config=DetectionConfig(**config),
        suspicious_ips=suspicious,
        clock=lambda: now,
    )


def _kinds(anomalies) -> list[str]:
    return [a.type for a in anomalies]


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("1d", timedelta(days=1)),
            ("7d", timedelta(days=7)),
            ("90d", timedelta(days=90)),
            ("12h", timedelta(hours=12)),
            ("2w", timedelta(weeks=2)),
            (timedelta(minutes=5), timedelta(minutes=5)),
        ],
    )
    def test_parse_time_range(self, value, expected):
        assert parse_time_range(value) == expected

    @pytest.mark.parametrize("value", ["", "7", "0d", "7y", "-1d", timedelta(0)])
    def test_parse_time_range_rejects(self, value):
        with pytest.raises(ValueError):
            parse_time_range(value)

    def test_max_in_window(self):
        stamps = [BASE + timedelta(minutes=m) for m in (0, 10, 20, 70, 75)]
        assert max_in_window(stamps, timedelta(hours=1)) == 3
        assert max_in_window([], timedelta(hours=1)) == 0

    @pytest.mark.parametrize(
        "current,previous,trend",
        [(2.0, 1.0, "increasing"), (1.0, 2.0, "decreasing"), (1.05, 1.0, "stable"), (0, 0, "stable")],
    )
    def test_trend_direction(self, current, previous, trend):
        assert trend_direction(current, previous) == trend


class TestFrequencyAnomaly:
    async def test_threshold_minus_one_is_quiet(self):
        events = [_event(created_at=BASE + timedelta(seconds=i)) for i in range(99)]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=30))

        anomalies = await detector.detect_anomalies()

        assert "high_frequency" not in _kinds(anomalies)

    async def test_threshold_yields_exactly_one(self):
        events = [_event(created_at=BASE + timedelta(seconds=i)) for i in range(100)]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=30))

        anomalies = await detector.detect_anomalies()

        frequency = [a for a in anomalies if a.type == "high_frequency"]
        assert len(frequency) == 1
        assert frequency[0].actor_id == "alice"
        assert frequency[0].severity == Severity.high

    async def test_events_outside_window_are_ignored(self):
        events = [
            _event(created_at=BASE - timedelta(hours=2, seconds=i)) for i in range(100)
        ]
        detector = await _make_detector(events, now=BASE)

        assert await detector.detect_anomalies() == []


class TestLoginAnomalies:
    async def test_brute_force_from_one_ip(self):
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)) for m in range(5)
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=10))

        anomalies = await detector.detect_anomalies()

        brute = [a for a in anomalies if a.type == "brute_force"]
        assert len(brute) == 1
        assert brute[0].ip_address == "203.0.113.9"
        assert brute[0].severity == Severity.high

    async def test_double_threshold_is_critical(self):
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)) for m in range(10)
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=20))

        anomalies = await detector.detect_anomalies()

        brute = [a for a in anomalies if a.type == "brute_force"]
        assert brute[0].severity == Severity.critical

    async def test_credential_stuffing_across_ips(self):
        ips = ["198.51.100.1", "198.51.100.1", "198.51.100.2", "198.51.100.2", "198.51.100.3"]
        events = [
            _failed_login(ip, BASE + timedelta(minutes=i), username="bob")
            for i, ip in enumerate(ips)
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=10))

        anomalies = await detector.detect_anomalies()

        assert _kinds(anomalies) == ["credential_stuffing"]
        assert anomalies[0].actor_id == "bob"
        assert anomalies[0].details["ip_addresses"] == [
            "198.51.100.1",
            "198.51.100.2",
            "198.51.100.3",
        ]


class TestBehaviourAnomalies:
    async def test_off_hours_pattern(self):
        night = datetime(2024, 5, 14, 23, 0, tzinfo=timezone.utc)
        events = [_event(created_at=night + timedelta(minutes=i)) for i in range(10)]
        detector = await _make_detector(events, now=BASE)

        anomalies = await detector.detect_anomalies(timedelta(days=1))

        assert _kinds(anomalies) == ["off_hours_pattern"]

    async def test_off_hours_needs_minimum_volume(self):
        night = datetime(2024, 5, 14, 23, 0, tzinfo=timezone.utc)
        events = [_event(created_at=night + timedelta(minutes=i)) for i in range(9)]
        detector = await _make_detector(events, now=BASE)

        assert await detector.detect_anomalies(timedelta(days=1)) == []

    async def test_ip_switch(self):
        events = [
            _event(ip_address="10.0.0.5", created_at=BASE),
            _event(ip_address="198.51.100.4", created_at=BASE + timedelta(minutes=5)),
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=10))

        anomalies = await detector.detect_anomalies()

        assert _kinds(anomalies) == ["ip_switch"]
        assert anomalies[0].details["ip_addresses"] == ["10.0.0.5", "198.51.100.4"]

    async def test_dangerous_sequence(self):
        events = [
            _event(type=t, created_at=BASE + timedelta(minutes=i))
            for i, t in enumerate(["login", "users.view", "users.delete"])
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=10))

        anomalies = await detector.detect_anomalies()

        assert _kinds(anomalies) == ["unusual_sequence"]
        assert anomalies[0].severity == Severity.high

    async def test_interrupted_sequence_is_not_flagged(self):
        events = [
            _event(type=t, created_at=BASE + timedelta(minutes=i))
            for i, t in enumerate(["login", "users.view", "reports.view", "users.delete"])
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=10))

        assert await detector.detect_anomalies() == []

    async def test_actor_filter(self):
        events = [_event(causer_id="bob", created_at=BASE + timedelta(seconds=i)) for i in range(100)]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=30))

        assert await detector.detect_anomalies(actor_id="alice") == []


class TestInMemoryDetection:
    def test_sequence_of_events_without_storage(self):
        detector = AnomalyDetector(InMemoryEventRepository())
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)) for m in range(5)
        ] + [
            _event(type=t, created_at=BASE + timedelta(minutes=i))
            for i, t in enumerate(["login", "users.view", "users.delete"])
        ]

        anomalies = detector.detect_anomalies_in(events)

        assert _kinds(anomalies) == ["brute_force", "unusual_sequence"]

    async def test_matches_stored_window(self):
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)) for m in range(10)
        ] + [
            _event(ip_address="198.51.100.4", created_at=BASE + timedelta(minutes=1)),
            _event(created_at=BASE + timedelta(minutes=3)),
        ]
        detector = await _make_detector(events, now=BASE + timedelta(minutes=20))

        stored = await detector.detect_anomalies()

        assert detector.detect_anomalies_in(iter(events)) == stored
        assert _kinds(stored) == ["brute_force", "ip_switch"]

    def test_empty_input(self):
        assert AnomalyDetector(InMemoryEventRepository()).detect_anomalies_in([]) == []


class TestSuspiciousIPs:
    async def test_eight_failed_logins_flag_the_ip(self):
        events = [
            _failed_login("10.0.0.1", BASE + timedelta(minutes=5 * m)) for m in range(8)
        ]
        suspicious = SuspiciousIPSet()
        detector = await _make_detector(
            events, now=BASE + timedelta(hours=1), suspicious=suspicious
        )

        flagged = await detector.check_suspicious_ips()

        assert [ip.ip_address for ip in flagged] == ["10.0.0.1"]
        assert flagged[0].score > 70
        assert flagged[0].failed_logins == 8
        assert flagged[0].brute_force is True
        assert "10.0.0.1" in suspicious
        assert suspicious.version == 1

    async def test_quiet_ip_is_not_flagged(self):
        events = [_failed_login("10.0.0.1", BASE), _event(ip_address="10.0.0.1")]
        detector = await _make_detector(events, now=BASE + timedelta(hours=1))

        assert await detector.check_suspicious_ips() == []

    async def test_lookback_excludes_old_events(self):
        old = BASE - timedelta(days=8)
        events = [_failed_login("10.0.0.1", old + timedelta(minutes=m)) for m in range(8)]
        detector = await _make_detector(events, now=BASE)

        assert await detector.check_suspicious_ips() == []

    async def test_results_sorted_by_score(self):
        events = [
            _failed_login("10.0.0.1", BASE + timedelta(minutes=m)) for m in range(8)
        ] + [
            _failed_login("203.0.113.5", BASE + timedelta(minutes=m), username=f"u{m}")
            for m in range(8)
        ]
        detector = await _make_detector(events, now=BASE + timedelta(hours=1))

        flagged = await detector.check_suspicious_ips()

        assert [ip.ip_address for ip in flagged] == ["203.0.113.5", "10.0.0.1"]
        assert flagged[0].score == 100


class TestPatterns:
    async def test_summary_distributions(self):
        events = [
            _event(type="users.view", risk_level=2, created_at=BASE),
            _event(type="users.view", risk_level=2, created_at=BASE + timedelta(minutes=1)),
            _event(
                type="users.delete",
                risk_level=5,
                ip_address="198.51.100.4",
                result=ActivityResult.failed,
                created_at=BASE + timedelta(minutes=2),
            ),
            _event(causer_id="bob", created_at=BASE),
        ]
        detector = await _make_detector(events, now=BASE + timedelta(hours=1))

        summary = await detector.identify_patterns("alice", "7d")

        assert summary.total_activities == 3
        assert summary.type_distribution == {"users.view": 2, "users.delete": 1}
        assert summary.hourly_distribution[10] == 3
        assert sum(summary.hourly_distribution) == 3
        assert summary.daily_distribution == {"Wednesday": 3}
        assert summary.average_risk_level == 3.0
        assert [(s.ip_address, s.count, s.failed) for s in summary.ip_addresses] == [
            ("10.0.0.5", 2, 0),
            ("198.51.100.4", 1, 1),
        ]
        assert summary.time_range == "7d"

    async def test_anomaly_score_against_empty_baseline(self):
        events = [_event(created_at=BASE + timedelta(minutes=i)) for i in range(3)]
        detector = await _make_detector(events, now=BASE + timedelta(hours=1))

        summary = await detector.identify_patterns("alice", "1d")

        assert summary.anomaly_score == 0.5

    async def test_steady_activity_scores_low(self):
        events = [
            _event(created_at=BASE - timedelta(days=d, hours=1)) for d in range(5)
        ]
        detector = await _make_detector(events, now=BASE)

        summary = await detector.identify_patterns("alice", "1d")

        assert summary.total_activities == 1
        assert summary.anomaly_score == 0.0

    def test_anomaly_score_stays_below_one(self):
        detector = AnomalyDetector(InMemoryEventRepository())
        assert 0 <= detector.anomaly_score(10**9, [0, 0, 0, 0]) < 1

    async def test_rejects_unknown_range(self):
        detector = await _make_detector([], now=BASE)
        with pytest.raises(ValueError):
            await detector.identify_patterns("alice", "soon")


class TestReports:
    async def test_monitor_failed_logins(self):
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)) for m in range(5)
        ] + [
            _failed_login("198.51.100.2", BASE + timedelta(hours=2)),
            _event(type="login", created_at=BASE),
        ]
        detector = await _make_detector(events, now=BASE + timedelta(hours=3))

        summary = await detector.monitor_failed_logins()

        assert summary.total_failures == 6
        assert summary.unique_ips == 2
        assert summary.peak_hours[0] == 10
        assert summary.top_ips[0].ip_address == "203.0.113.9"
        assert len(summary.brute_force) == 1

    async def test_security_report(self):
        events = [
            _failed_login("203.0.113.9", BASE + timedelta(minutes=m)).model_copy(
                update={"risk_level": 4}
            )
            for m in range(8)
        ] + [_event(type="roles.assign", risk_level=9, created_at=BASE)]
        detector = await _make_detector(events, now=BASE + timedelta(hours=1))

        report = await detector.security_report("7d")

        assert report.total_activities == 9
        assert report.failed_activities == 8
        assert report.by_risk == {"low": 0, "medium": 8, "high": 0, "critical": 1}
        assert report.top_risks[0]["type"] == "roles.assign"
        assert report.top_actors == [
            {"causer_id": "alice", "total_risk": 9, "activities": 1}
        ]
        assert [ip.ip_address for ip in report.suspicious_ips] == ["203.0.113.9"]
        assert "brute_force" in _kinds(report.anomalies)
        assert report.risk_trend == "increasing"
        assert any("suspicious IP" in r for r in report.recommendations)
        assert any("critical-risk" in r for r in report.recommendations)

    async def test_empty_report(self):
        detector = await _make_detector([], now=BASE)

        report = await detector.security_report("1d")

        assert report.total_activities == 0
        assert report.risk_trend == "stable"
        assert report.recommendations == []
