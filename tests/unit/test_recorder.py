"""Unit tests for the synchronous recording path and tamper protection."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from trailguard.audit import EventRecorder
from trailguard.audit import IntegritySigner
from trailguard.config import AlertConfig
from trailguard.engine import AlertGenerator
from trailguard.engine import CollectingChannel
from trailguard.engine import SecurityAnalyzer
from trailguard.errors import TamperAttempt
from trailguard.errors import ValidationError
from trailguard.models import ActivityResult
from trailguard.models import Severity
from trailguard.observability import counters_snapshot
from trailguard.observability import latency_metrics_snapshot
from trailguard.observability import MetricsRecorder
from trailguard.storage import InMemoryAlertRepository
from trailguard.storage import InMemoryEventRepository
from trailguard.storage import InMemoryMetricRepository

BUSINESS_TIME = datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)


def _make_recorder(
    repo: InMemoryEventRepository | None = None,
) -> tuple[EventRecorder, InMemoryEventRepository, InMemoryAlertRepository, CollectingChannel]:
    events = repo or InMemoryEventRepository()
    alerts = InMemoryAlertRepository()
    channel = CollectingChannel()
    analyzer = SecurityAnalyzer(
        events,
        AlertGenerator(alerts, config=AlertConfig(), channels=[channel]),
    )
    recorder = EventRecorder(
        events,
        signer=IntegritySigner(),
        analyzer=analyzer,
        metrics=MetricsRecorder(InMemoryMetricRepository()),
    )
    return recorder, events, alerts, channel


def _payload(**overrides) -> dict:
    data = {
        "type": "users.view",
        "description": "Viewed user list",
        "causer_id": "alice",
        "ip_address": "10.0.0.5",
        "created_at": BUSINESS_TIME,
    }
    data.update(overrides)
    return data


class TestRecord:
    async def test_persists_signed_filtered_event(self):
        recorder, repo, _, _ = _make_recorder()
        signer = IntegritySigner()

        stored = await recorder.record(
            _payload(properties={"password": "secret123", "email": "a@example.com"})
        )

        reread = await repo.get(stored.id)
        assert reread is not None
        assert reread.properties["password"] == "[FILTERED]"
        assert reread.properties["email"] == "a@example.com"
        assert signer.verify(reread) is True

    async def test_assigns_monotonic_ids(self):
        recorder, _, _, _ = _make_recorder()
        first = await recorder.record(_payload())
        second = await recorder.record(_payload())
        assert second.id > first.id

    async def test_sets_risk_level(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record(_payload(type="users.delete"))
        assert stored.risk_level == 2

    async def test_defaults_created_at_to_now(self):
        recorder, _, _, _ = _make_recorder()
        payload = _payload()
        del payload["created_at"]
        stored = await recorder.record(payload)
        assert stored.created_at.tzinfo is not None

    async def test_naive_created_at_is_treated_as_utc(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record(_payload(created_at=datetime(2024, 5, 15, 10)))
        assert stored.created_at == BUSINESS_TIME

    async def test_records_latency_counter_and_metric(self):
        recorder, _, _, _ = _make_recorder()
        await recorder.record(_payload())
        assert latency_metrics_snapshot()["activity.record"]["count"] == 1
        assert counters_snapshot()["activities.recorded"] == 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"type": ""},
            {"type": "   "},
            {"type": "x" * 101},
            {"description": ""},
            {"description": "x" * 501},
            {"result": "exploded"},
        ],
    )
    async def test_rejects_invalid_payload(self, overrides):
        recorder, repo, _, _ = _make_recorder()
        with pytest.raises(ValidationError):
            await recorder.record(_payload(**overrides))
        assert await repo.count() == 0

    async def test_numeric_ids_are_coerced_to_strings(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record(_payload(causer_id=42, subject_id=7))
        assert stored.causer_id == "42"
        assert stored.subject_id == "7"

    async def test_analysis_failure_does_not_fail_write(self):
        recorder, repo, _, _ = _make_recorder()

        async def boom(event, context=None):
            raise RuntimeError("analyzer down")

        recorder._analyzer.process = boom  # type: ignore[union-attr]
        stored = await recorder.record(_payload())
        assert await repo.get(stored.id) is not None


class TestRecordAlerts:
    async def test_privilege_change_raises_high_alert(self):
        recorder, _, alerts, channel = _make_recorder()
        stored = await recorder.record(_payload(type="roles.assign"))

        persisted = await alerts.list()
        assert len(persisted) == 1
        assert persisted[0].severity == Severity.high
        assert persisted[0].activity_id == stored.id
        assert channel.alerts == persisted

    async def test_ordinary_activity_raises_nothing(self):
        recorder, _, alerts, _ = _make_recorder()
        await recorder.record(_payload(type="logout"))
        assert await alerts.count() == 0

    async def test_repeated_login_failures_escalate(self):
        recorder, _, alerts, _ = _make_recorder()
        for minute in range(5):
            await recorder.record(
                _payload(
                    type="login",
                    description="Failed login for bob",
                    causer_id=None,
                    ip_address="203.0.113.9",
                    result="failed",
                    properties={"username": "bob"},
                    created_at=BUSINESS_TIME.replace(minute=minute),
                )
            )
        persisted = await alerts.list()
        assert persisted[-1].type == "login_failure"
        assert persisted[-1].severity == Severity.high


class TestRecordBatch:
    async def test_records_all_in_order(self):
        recorder, repo, _, _ = _make_recorder()
        payloads = [_payload(subject_id=str(i)) for i in range(250)]

        stored = await recorder.record_batch(payloads)

        assert len(stored) == 250
        assert [e.subject_id for e in stored] == [str(i) for i in range(250)]
        assert await repo.count() == 250

    async def test_invalid_member_rejects_whole_batch(self):
        recorder, repo, _, _ = _make_recorder()
        with pytest.raises(ValidationError):
            await recorder.record_batch([_payload(), _payload(type="")])
        assert await repo.count() == 0


class TestConvenienceWriters:
    async def test_login_failed(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record_login_failed(
            "bob", ip_address="10.0.0.1", reason="bad_password"
        )
        assert stored.type == "login"
        assert stored.result == ActivityResult.failed
        assert stored.properties == {"username": "bob", "reason": "bad_password"}

    async def test_system_event_has_no_causer(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record_system_event(
            "system.maintenance", "Nightly job", causer_id="ignored"
        )
        assert stored.causer_id is None
        assert stored.module == "system"

    async def test_security_event_defaults_to_warning(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record_security_event(
            "security.scan", "Port scan detected", ip_address="198.51.100.1"
        )
        assert stored.result == ActivityResult.warning
        assert stored.module == "security"


class TestTamperProtection:
    async def test_update_of_protected_field_is_refused(self):
        recorder, repo, _, _ = _make_recorder()
        stored = await recorder.record(_payload())

        with pytest.raises(TamperAttempt) as info:
            await recorder.update(stored.model_copy(update={"description": "edited"}))

        assert info.value.fields == ["description"]
        assert info.value.severity == "medium"
        assert (await repo.get(stored.id)).description == "Viewed user list"
        assert counters_snapshot()["activities.tamper_attempts"] == 1

    async def test_many_fields_is_high_severity(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record(_payload())
        candidate = stored.model_copy(
            update={"type": "x", "description": "y", "causer_id": "z"}
        )
        with pytest.raises(TamperAttempt) as info:
            recorder.guard_update(stored, candidate)
        assert info.value.severity == "high"

    async def test_bookkeeping_update_keeps_signature_valid(self):
        recorder, repo, _, _ = _make_recorder()
        stored = await recorder.record(_payload())

        updated = await recorder.update(
            stored.model_copy(update={"archived_at": BUSINESS_TIME})
        )

        assert updated.archived_at == BUSINESS_TIME
        assert IntegritySigner().verify(await repo.get(stored.id)) is True

    async def test_update_bookkeeping_rejects_other_fields(self):
        recorder, _, _, _ = _make_recorder()
        stored = await recorder.record(_payload())
        with pytest.raises(TamperAttempt):
            await recorder.update_bookkeeping(stored.id, properties={})

    async def test_soft_delete(self):
        recorder, repo, _, _ = _make_recorder()
        stored = await recorder.record(_payload())

        deleted = await recorder.soft_delete(stored.id)

        assert deleted.is_deleted
        assert IntegritySigner().verify(deleted) is True

    async def test_update_unknown_record(self):
        recorder, _, _, _ = _make_recorder()
        with pytest.raises(ValidationError):
            await recorder.update_bookkeeping(999, deleted_at=BUSINESS_TIME)
