"""Unit tests for multi-factor risk scoring and per-event findings."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from trailguard.engine import RiskContext
from trailguard.engine import RiskScorer
from trailguard.engine import SecurityEventDetector
from trailguard.engine.security_events import login_failure_severity
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import Severity

# Wednesday 2024-05-15.
WEEKDAY_NOON = datetime(2024, 5, 15, 14, 0, tzinfo=timezone.utc)
WEEKDAY_NIGHT = datetime(2024, 5, 15, 2, 0, tzinfo=timezone.utc)
SATURDAY_NOON = datetime(2024, 5, 18, 14, 0, tzinfo=timezone.utc)


def _make_event(**overrides) -> ActivityEvent:
    data = {
        "type": "login",
        "description": "Login",
        "causer_id": "alice",
        "ip_address": "10.0.0.1",
        "created_at": WEEKDAY_NOON,
    }
    data.update(overrides)
    return ActivityEvent(**data)


class TestFactors:
    def test_successful_internal_login(self):
        assessment = RiskScorer().assess(_make_event())
        assert assessment.score == 5
        assert assessment.level == 1
        assert assessment.classification == Severity.low

    def test_failed_login_adds_points(self):
        assessment = RiskScorer().assess(_make_event(result=ActivityResult.failed))
        assert assessment.factors["result"] == 20
        assert assessment.score == 25

    def test_recent_failures_compound_with_cap(self):
        scorer = RiskScorer()
        failed = _make_event(result=ActivityResult.failed)
        assert scorer.score(failed, RiskContext(recent_failures=2)) == 35
        assert scorer.score(failed, RiskContext(recent_failures=50)) == 45

    def test_failed_non_login_action(self):
        assessment = RiskScorer().assess(
            _make_event(type="users.update", result=ActivityResult.failed)
        )
        assert assessment.factors["result"] == 10

    def test_type_weights(self):
        scorer = RiskScorer()
        assert scorer.type_weight("users.delete") == 15
        assert scorer.type_weight("roles.assign") == 30
        assert scorer.type_weight("system.settings") == 20
        assert scorer.type_weight("Reports.Export") == 10
        assert scorer.type_weight("unknown") == 5

    def test_external_and_suspicious_origin(self):
        scorer = RiskScorer()
        external = _make_event(ip_address="203.0.113.9")
        assert scorer.assess(external).factors["origin"] == 10
        context = RiskContext(suspicious_ips=frozenset({"203.0.113.9"}))
        assert scorer.assess(external, context).factors["origin"] == 50

    def test_missing_ip(self):
        assert RiskScorer().assess(_make_event(ip_address=None)).factors["origin"] == 5

    def test_internal_ranges(self):
        scorer = RiskScorer()
        assert scorer.is_internal("192.168.1.1")
        assert scorer.is_internal("172.20.0.1")
        assert scorer.is_internal("::1")
        assert not scorer.is_internal("8.8.8.8")
        assert not scorer.is_internal("garbage")

    @pytest.mark.parametrize(
        "batch_size,points",
        [(None, 0), (10, 0), (11, 10), (30, 15), (500, 20), ("many", 0)],
    )
    def test_volume(self, batch_size, points):
        properties = {} if batch_size is None else {"batch_size": batch_size}
        assessment = RiskScorer().assess(_make_event(properties=properties))
        assert assessment.factors["volume"] == points

    def test_off_hours_multiplier(self):
        scorer = RiskScorer()
        night = scorer.assess(_make_event(created_at=WEEKDAY_NIGHT))
        assert night.factors["time_multiplier"] == 1.5
        assert night.score == 8

    def test_weekend_is_off_hours(self):
        scorer = RiskScorer()
        assert scorer.is_off_hours(_make_event(created_at=SATURDAY_NOON))
        assert not scorer.is_off_hours(_make_event(created_at=WEEKDAY_NOON))

    def test_score_is_clamped(self):
        event = _make_event(
            type="security.override",
            result=ActivityResult.failed,
            ip_address="203.0.113.9",
            properties={"batch_size": 1000},
            created_at=WEEKDAY_NIGHT,
        )
        context = RiskContext(
            suspicious_ips=frozenset({"203.0.113.9"}), recent_failures=10
        )
        assessment = RiskScorer().assess(event, context)
        assert assessment.score == 100
        assert assessment.level == 10
        assert assessment.classification == Severity.critical


class TestMonotonicity:
    @pytest.mark.parametrize("event_type", ["login", "users.delete", "roles.assign"])
    def test_night_scores_no_lower_than_day(self, event_type):
        scorer = RiskScorer()
        day = scorer.score(_make_event(type=event_type, created_at=WEEKDAY_NOON))
        night = scorer.score(_make_event(type=event_type, created_at=WEEKDAY_NIGHT))
        assert night >= day

    @pytest.mark.parametrize("event_type", ["login", "users.delete", "export"])
    def test_failure_scores_no_lower_than_success(self, event_type):
        scorer = RiskScorer()
        ok = scorer.score(_make_event(type=event_type))
        failed = scorer.score(_make_event(type=event_type, result=ActivityResult.failed))
        assert failed >= ok


class TestLevels:
    @pytest.mark.parametrize(
        "score,level",
        [(0, 0), (4, 0), (5, 1), (14, 1), (15, 2), (94, 9), (95, 10), (100, 10), (150, 10)],
    )
    def test_to_level_rounds_half_up(self, score, level):
        assert RiskScorer.to_level(score) == level

    @pytest.mark.parametrize(
        "level,severity",
        [
            (0, Severity.low),
            (2, Severity.low),
            (3, Severity.medium),
            (5, Severity.medium),
            (6, Severity.high),
            (8, Severity.high),
            (9, Severity.critical),
            (10, Severity.critical),
        ],
    )
    def test_classify(self, level, severity):
        assert RiskScorer.classify(level) == severity


class TestSecurityEventDetector:
    def test_failed_login_severity_grows_with_recent_failures(self):
        detector = SecurityEventDetector()
        failed = _make_event(result=ActivityResult.failed)

        first = detector.detect(failed)
        fifth = detector.detect(failed, RiskContext(recent_failures=4))

        assert [f.type for f in first] == ["login_failure"]
        assert first[0].severity == Severity.low
        assert fifth[0].severity == Severity.high

    @pytest.mark.parametrize(
        "failures,severity",
        [(1, Severity.low), (3, Severity.medium), (5, Severity.high), (10, Severity.critical)],
    )
    def test_login_failure_severity(self, failures, severity):
        assert login_failure_severity(failures) == severity

    def test_privilege_escalation(self):
        findings = SecurityEventDetector().detect(_make_event(type="roles.assign"))
        assert [(f.type, f.severity) for f in findings] == [
            ("privilege_escalation", Severity.high)
        ]

    def test_config_change_and_sensitive_access(self):
        findings = SecurityEventDetector().detect(_make_event(type="system.settings"))
        assert {f.type for f in findings} == {
            "sensitive_data_access",
            "system_config_change",
        }

    def test_suspicious_ip_and_bulk(self):
        event = _make_event(
            type="users.export",
            description="Bulk export",
            ip_address="198.51.100.7",
        )
        context = RiskContext(suspicious_ips=frozenset({"198.51.100.7"}))
        findings = SecurityEventDetector().detect(event, context)
        assert {f.type for f in findings} == {"suspicious_ip", "bulk_operation"}

    def test_ordinary_event_has_no_findings(self):
        assert SecurityEventDetector().detect(_make_event(type="users.view2")) == []
