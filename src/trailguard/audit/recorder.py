"""Synchronous activity recording: validate, filter, score, sign, persist.

``EventRecorder.record`` is the single write path; the async queue calls
it from its workers.  Post-write security analysis runs after the event
is persisted and never fails the write.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from collections.abc import Sequence
from time import perf_counter
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from trailguard.audit.filter import SensitiveDataFilter
from trailguard.audit.integrity import IntegritySigner
from trailguard.engine.analyzer import SecurityAnalyzer
from trailguard.engine.risk import RiskContext
from trailguard.engine.risk import RiskScorer
from trailguard.errors import TamperAttempt
from trailguard.errors import ValidationError
from trailguard.models import ActivityEvent
from trailguard.models import ActivityResult
from trailguard.models import BOOKKEEPING_FIELDS
from trailguard.models import changed_protected_fields
from trailguard.models import EventPayload
from trailguard.models import utcnow
from trailguard.observability import increment_counter
from trailguard.observability import MetricsRecorder
from trailguard.observability import record_latency
from trailguard.storage import EventRepository

logger = logging.getLogger(__name__)

BATCH_CHUNK_SIZE = 100


def validate_payload(payload: EventPayload | Mapping[str, Any]) -> EventPayload:
    """Coerce *payload* into an ``EventPayload`` or raise ``ValidationError``."""
    if isinstance(payload, EventPayload):
        return payload
    try:
        return EventPayload.model_validate(dict(payload))
    except PydanticValidationError as exc:
        err = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "Invalid activity payload")
        raise ValidationError(f"{loc}: {msg}" if loc else str(msg)) from exc


def _json_safe(properties: dict[str, Any]) -> dict[str, Any]:
    # Round-trip so signed values equal what any backend reads back.
    return json.loads(json.dumps(properties, default=str))


class EventRecorder:
    """Writes signed activity events to the event repository."""

    def __init__(
        self,
        repository: EventRepository,
        *,
        signer: IntegritySigner | None = None,
        data_filter: SensitiveDataFilter | None = None,
        analyzer: SecurityAnalyzer | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._repo = repository
        self._signer = signer or IntegritySigner()
        self._filter = data_filter or SensitiveDataFilter()
        self._analyzer = analyzer
        self._scorer = analyzer.scorer if analyzer is not None else RiskScorer()
        self._metrics = metrics or MetricsRecorder(None)

    # -- write --

    async def record(self, payload: EventPayload | Mapping[str, Any]) -> ActivityEvent:
        """Validate, mask, score, sign and persist one event."""
        start = perf_counter()
        ok = False
        try:
            validated = validate_payload(payload)
            event, context = await self._prepare(validated)
            stored = await self._repo.add(event)
            ok = True
        finally:
            duration_ms = (perf_counter() - start) * 1000
            record_latency(
                operation="activity.record", duration_ms=duration_ms, ok=ok
            )
        increment_counter("activities.recorded")
        await self._metrics.record("activity_logging", "record", duration_ms)
        logger.info(
            "Recorded activity id=%s type=%s risk_level=%d",
            stored.id,
            stored.type,
            stored.risk_level,
        )
        await self._analyze(stored, context)
        return stored

    async def record_batch(
        self,
        payloads: Sequence[EventPayload | Mapping[str, Any]],
        *,
        chunk_size: int = BATCH_CHUNK_SIZE,
    ) -> list[ActivityEvent]:
        """Record many events, inserting ``chunk_size`` at a time.

        The whole batch is validated before anything is written.
        """
        validated = [validate_payload(p) for p in payloads]
        start = perf_counter()
        stored: list[ActivityEvent] = []
        ok = False
        try:
            for i in range(0, len(validated), chunk_size):
                prepared = [await self._prepare(p) for p in validated[i : i + chunk_size]]
                written = await self._repo.add_many([event for event, _ in prepared])
                for event, (_, context) in zip(written, prepared):
                    stored.append(event)
                    await self._analyze(event, context)
            ok = True
        finally:
            record_latency(
                operation="activity.record_batch",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
        increment_counter("activities.recorded", len(stored))
        await self._metrics.record(
            "activity_logging", "record_batch", float(len(stored)), unit="records"
        )
        return stored

    async def record_security_event(
        self,
        type: str,
        description: str,
        *,
        properties: Mapping[str, Any] | None = None,
        result: ActivityResult = ActivityResult.warning,
        **fields: Any,
    ) -> ActivityEvent:
        return await self.record(
            {
                "type": type,
                "description": description,
                "properties": dict(properties or {}),
                "result": result,
                "module": "security",
                **fields,
            }
        )

    async def record_system_event(
        self,
        type: str,
        description: str,
        *,
        properties: Mapping[str, Any] | None = None,
        **fields: Any,
    ) -> ActivityEvent:
        fields.pop("causer_id", None)
        return await self.record(
            {
                "type": type,
                "description": description,
                "properties": dict(properties or {}),
                "causer_id": None,
                "module": "system",
                **fields,
            }
        )

    async def record_login_failed(
        self,
        username: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        reason: str = "invalid_credentials",
        causer_id: str | None = None,
    ) -> ActivityEvent:
        return await self.record(
            {
                "type": "login",
                "description": f"Failed login attempt for {username}",
                "causer_id": causer_id,
                "properties": {"username": username, "reason": reason},
                "ip_address": ip_address,
                "user_agent": user_agent,
                "result": ActivityResult.failed,
                "module": "auth",
            }
        )

    # -- update --

    def guard_update(self, current: ActivityEvent, candidate: ActivityEvent) -> None:
        """Raise ``TamperAttempt`` if *candidate* changes any protected field."""
        changed = changed_protected_fields(current, candidate)
        if not changed:
            return
        severity = "high" if len(changed) > 2 else "medium"
        logger.warning(
            "Tamper attempt on activity id=%s fields=%s severity=%s",
            current.id,
            ",".join(changed),
            severity,
        )
        increment_counter("activities.tamper_attempts")
        raise TamperAttempt(current.id, changed, severity=severity)

    async def update(self, candidate: ActivityEvent) -> ActivityEvent:
        """Persist a modified record if only bookkeeping fields changed."""
        if candidate.id is None:
            raise ValidationError("Cannot update an activity without an id")
        current = await self._repo.get(candidate.id)
        if current is None:
            raise ValidationError(f"Activity {candidate.id} not found")
        self.guard_update(current, candidate)
        updated = current.model_copy(
            update={name: getattr(candidate, name) for name in BOOKKEEPING_FIELDS}
        )
        await self._repo.put(updated)
        return updated

    async def update_bookkeeping(self, event_id: int, **changes: Any) -> ActivityEvent:
        """Set bookkeeping fields (``archived_at``, ``deleted_at``) on a record."""
        forbidden = sorted(set(changes) - set(BOOKKEEPING_FIELDS))
        if forbidden:
            increment_counter("activities.tamper_attempts")
            raise TamperAttempt(
                event_id,
                forbidden,
                severity="high" if len(forbidden) > 2 else "medium",
            )
        current = await self._repo.get(event_id)
        if current is None:
            raise ValidationError(f"Activity {event_id} not found")
        updated = ActivityEvent.model_validate(
            {**current.model_dump(), **changes}
        )
        await self._repo.put(updated)
        return updated

    async def soft_delete(self, event_id: int) -> ActivityEvent:
        return await self.update_bookkeeping(event_id, deleted_at=utcnow())

    # -- internal --

    async def _prepare(
        self,
        payload: EventPayload,
    ) -> tuple[ActivityEvent, RiskContext]:
        event = ActivityEvent(
            type=payload.type,
            description=payload.description,
            causer_id=payload.causer_id,
            subject_id=payload.subject_id,
            subject_type=payload.subject_type,
            module=payload.module,
            properties=_json_safe(self._filter.filter(payload.properties)),
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
            result=payload.result,
            created_at=payload.created_at or utcnow(),
        )
        if self._analyzer is not None:
            context = await self._analyzer.build_context(event)
        else:
            context = RiskContext()
        assessment = self._scorer.assess(event, context)
        event = event.model_copy(update={"risk_level": assessment.level})
        return self._signer.sign_event(event), context

    async def _analyze(self, event: ActivityEvent, context: RiskContext) -> None:
        if self._analyzer is None:
            return
        try:
            await self._analyzer.process(event, context)
        except Exception:
            logger.exception("Security analysis failed for activity %s", event.id)
