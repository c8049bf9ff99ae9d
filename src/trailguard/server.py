"""Trailguard: FastMCP server exposing the audit trail to operators.

Tools delegate to the recorder, detector, integrity signer and backup
engine wired by ``configure()``.  Without a ``redis_url`` the server
runs on in-memory repositories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from time import perf_counter

from fastmcp import FastMCP
from fastmcp.server.auth import AccessToken
from fastmcp.server.dependencies import get_access_token
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from trailguard.audit import AsyncEventQueue
from trailguard.audit import EventRecorder
from trailguard.audit import IntegritySigner
from trailguard.audit import SensitiveDataFilter
from trailguard.auth import create_mcp_auth
from trailguard.authz import authorize_tool
from trailguard.authz import is_authorization_enabled
from trailguard.backup import BackupEngine
from trailguard.config import TrailguardConfig
from trailguard.engine import AlertGenerator
from trailguard.engine import AnomalyDetector
from trailguard.engine import NotificationChannel
from trailguard.engine import RiskScorer
from trailguard.engine import SecurityAnalyzer
from trailguard.engine import SecurityEventDetector
from trailguard.engine import SuspiciousIPSet
from trailguard.errors import BackupCorruption
from trailguard.errors import EncryptionFailure
from trailguard.errors import StorageError
from trailguard.errors import TrailguardError
from trailguard.errors import ValidationError
from trailguard.models.tools import OperationResult
from trailguard.models.tools import RecordActivityInput
from trailguard.models.tools import RecordActivityResult
from trailguard.observability import MetricsRecorder
from trailguard.observability import record_latency
from trailguard.storage import AlertRepository
from trailguard.storage import EventCriteria
from trailguard.storage import EventRepository
from trailguard.storage import InMemoryAlertRepository
from trailguard.storage import InMemoryEventRepository
from trailguard.storage import InMemoryMetricRepository
from trailguard.storage import MetricRepository
from trailguard.storage import RedisAlertRepository
from trailguard.storage import RedisEventRepository
from trailguard.storage import RedisMetricRepository

logger = logging.getLogger(__name__)

mcp = FastMCP("Trailguard", auth=create_mcp_auth())

# ---------------------------------------------------------------------------
# Services (set via configure())
# ---------------------------------------------------------------------------


@dataclass
class _Services:
    events: EventRepository
    alerts: AlertRepository
    metrics: MetricRepository
    signer: IntegritySigner
    recorder: EventRecorder
    detector: AnomalyDetector
    backup: BackupEngine
    queue: AsyncEventQueue | None = None
    redis: Redis | None = None


_services: _Services | None = None


async def configure(
    redis_url: str | None = None,
    *,
    config: TrailguardConfig | None = None,
    channels: list[NotificationChannel] | None = None,
    enable_queue: bool = False,
) -> None:
    """Wire repositories and components.

    Must be called before the tools can function.  Calling it again
    replaces the previous wiring.
    """
    global _services
    await shutdown()

    cfg = config or TrailguardConfig()
    client: Redis | None = None
    if redis_url is not None:
        client = Redis.from_url(redis_url)
        events: EventRepository = RedisEventRepository(client)
        alerts: AlertRepository = RedisAlertRepository(client)
        metric_repo: MetricRepository = RedisMetricRepository(client)
    else:
        events = InMemoryEventRepository()
        alerts = InMemoryAlertRepository()
        metric_repo = InMemoryMetricRepository()

    metrics = MetricsRecorder(metric_repo, enabled=cfg.metrics.enabled)
    suspicious = SuspiciousIPSet()
    scorer = RiskScorer(cfg.risk)
    signer = IntegritySigner(cfg.integrity)
    analyzer = SecurityAnalyzer(
        events,
        AlertGenerator(alerts, config=cfg.alerts, channels=channels),
        scorer=scorer,
        detector=SecurityEventDetector(cfg.risk),
        suspicious_ips=suspicious,
        config=cfg.alerts,
    )
    recorder = EventRecorder(
        events,
        signer=signer,
        data_filter=SensitiveDataFilter(cfg.filter),
        analyzer=analyzer,
        metrics=metrics,
    )
    queue: AsyncEventQueue | None = None
    if enable_queue:
        queue = AsyncEventQueue(recorder, config=cfg.queue)
        queue.start()

    _services = _Services(
        events=events,
        alerts=alerts,
        metrics=metric_repo,
        signer=signer,
        recorder=recorder,
        detector=AnomalyDetector(
            events,
            config=cfg.detection,
            risk_scorer=scorer,
            suspicious_ips=suspicious,
        ),
        backup=BackupEngine(events, signer=signer, config=cfg.backup, metrics=metrics),
        queue=queue,
        redis=client,
    )
    logger.info(
        "Trailguard configured backend=%s queue=%s",
        "redis" if client is not None else "memory",
        enable_queue,
    )


async def shutdown() -> None:
    """Stop the queue and close backend clients."""
    global _services
    services = _services
    _services = None
    if services is None:
        return
    if services.queue is not None:
        await services.queue.stop()
    if services.redis is not None:
        try:
            await services.redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass


def _get_services() -> _Services:
    if _services is None:
        raise RuntimeError("Trailguard not configured. Call configure() first.")
    return _services


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _current_token() -> AccessToken | None:
    try:
        return get_access_token()
    except RuntimeError:
        return None


def _forbidden(tool_name: str) -> str | None:
    """Return a denial message when the caller lacks the tool's scope."""
    if not is_authorization_enabled():
        return None
    decision = authorize_tool(tool_name, _current_token())
    return None if decision.allowed else decision.message


def _error(error_code: str, message: str, *, status: str = "error") -> OperationResult:
    return OperationResult(status=status, error_code=error_code, message=message)


def _backup_path(services: _Services, filename: str) -> Path | None:
    if not filename or Path(filename).name != filename:
        return None
    return services.backup.directory / filename


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def record_activity(
    type: str,
    description: str,
    causer_id: str | None = None,
    subject_id: str | None = None,
    subject_type: str | None = None,
    module: str | None = None,
    properties: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    result: str = "success",
    queued: bool = False,
) -> RecordActivityResult:
    """Record an activity event in the tamper-evident audit trail.

    Args:
        type: Activity category, e.g. 'login' or 'users.delete'.
        description: Human-readable summary (max 500 chars).
        causer_id: Acting user; omit for system events.
        subject_id: Identifier of the affected object.
        subject_type: Kind of the affected object.
        module: Functional area of the host application.
        properties: Structured context; sensitive keys are masked.
        ip_address: Origin IP address.
        user_agent: Client user agent.
        result: 'success', 'failed' or 'warning'.
        queued: Hand the event to the background queue instead of waiting.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("record_activity")
        if denied is not None:
            return RecordActivityResult(
                status="rejected", error_code="forbidden", message=denied
            )
        try:
            validated = RecordActivityInput.model_validate(
                {
                    "type": type,
                    "description": description,
                    "causer_id": causer_id,
                    "subject_id": subject_id,
                    "subject_type": subject_type,
                    "module": module,
                    "properties": properties or {},
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                    "result": result,
                }
            )
            payload = validated.model_dump()
            if queued and services.queue is not None:
                accepted = await services.queue.submit(payload)
                ok = True
                return RecordActivityResult(
                    status="queued" if accepted else "suppressed"
                )
            event = await services.recorder.record(payload)
        except PydanticValidationError as exc:
            err = exc.errors()[0] if exc.errors() else {}
            return RecordActivityResult(
                status="rejected",
                error_code="validation_error",
                message=str(err.get("msg", "Invalid input")),
            )
        except ValidationError as exc:
            return RecordActivityResult(
                status="rejected", error_code="validation_error", message=str(exc)
            )
        except StorageError as exc:
            return RecordActivityResult(
                status="rejected", error_code="storage_error", message=str(exc)
            )

        ok = True
        return RecordActivityResult(
            activity_id=event.id,
            risk_level=event.risk_level,
            signature_version=event.signature_version,
        )
    finally:
        record_latency(
            operation="mcp.record_activity",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def verify_integrity(
    since: datetime | None = None,
    until: datetime | None = None,
    causer_id: str | None = None,
) -> OperationResult:
    """Verify the signatures of stored activities and list corrupted ones.

    Args:
        since: Only verify activities created at or after this time.
        until: Only verify activities created before this time.
        causer_id: Only verify activities of this actor.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("verify_integrity")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        report = await services.signer.verify_batch(
            services.events,
            EventCriteria(since=since, until=until, causer_id=causer_id),
        )
        ok = True
        return OperationResult(data=report.model_dump(mode="json"))
    finally:
        record_latency(
            operation="mcp.verify_integrity",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def check_suspicious_ips() -> OperationResult:
    """Score IP addresses seen in the last 7 days and list suspicious ones."""
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("check_suspicious_ips")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        suspicious = await services.detector.check_suspicious_ips()
        ok = True
        return OperationResult(data=[ip.model_dump(mode="json") for ip in suspicious])
    finally:
        record_latency(
            operation="mcp.check_suspicious_ips",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def detect_anomalies(
    window_minutes: int = 60,
    actor_id: str | None = None,
) -> OperationResult:
    """Detect behavioural anomalies in the most recent window.

    Args:
        window_minutes: Length of the window ending now.
        actor_id: Restrict the scan to one actor.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("detect_anomalies")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        if window_minutes <= 0:
            return _error(
                "validation_error", "window_minutes must be positive", status="rejected"
            )
        anomalies = await services.detector.detect_anomalies(
            timedelta(minutes=window_minutes), actor_id=actor_id
        )
        ok = True
        return OperationResult(data=[a.model_dump(mode="json") for a in anomalies])
    finally:
        record_latency(
            operation="mcp.detect_anomalies",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def identify_patterns(
    actor_id: str | None = None,
    time_range: str = "7d",
) -> OperationResult:
    """Summarize activity patterns and score how unusual they are.

    Args:
        actor_id: Actor to analyze; omit for everyone.
        time_range: One of '1d', '7d', '30d', '90d'.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("identify_patterns")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        try:
            summary = await services.detector.identify_patterns(actor_id, time_range)
        except ValueError as exc:
            return _error("validation_error", str(exc), status="rejected")
        ok = True
        return OperationResult(data=summary.model_dump(mode="json"))
    finally:
        record_latency(
            operation="mcp.identify_patterns",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def security_report(time_range: str = "7d") -> OperationResult:
    """Build a security report: risk distribution, top risks, IPs, anomalies.

    Args:
        time_range: One of '1d', '7d', '30d', '90d'.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("security_report")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        try:
            report = await services.detector.security_report(time_range)
        except ValueError as exc:
            return _error("validation_error", str(exc), status="rejected")
        ok = True
        return OperationResult(data=report.model_dump(mode="json"))
    finally:
        record_latency(
            operation="mcp.security_report",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def create_backup(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    include_deleted: bool = False,
) -> OperationResult:
    """Export, compress and encrypt activities into a backup artifact.

    Args:
        date_from: Include activities created at or after this time.
        date_to: Include activities created before this time.
        include_deleted: Include soft-deleted activities.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("create_backup")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        result = await services.backup.create_backup(
            date_from=date_from, date_to=date_to, include_deleted=include_deleted
        )
        ok = result.success
        return OperationResult(
            status="ok" if result.success else "error",
            error_code=None if result.success else "backup_failed",
            message=result.errors[0] if result.errors else None,
            data=result.model_dump(mode="json"),
        )
    finally:
        record_latency(
            operation="mcp.create_backup",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def verify_backup(filename: str, deep: bool = False) -> OperationResult:
    """Check a backup artifact's checksum (and optionally decrypt it).

    Args:
        filename: Artifact name as returned by list_backups.
        deep: Also decrypt and parse the payload.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("verify_backup")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        path = _backup_path(services, filename)
        if path is None:
            return _error("validation_error", "Invalid backup filename", status="rejected")
        try:
            verification = await services.backup.verify_backup_integrity(path, deep=deep)
        except BackupCorruption as exc:
            return _error("backup_corrupted", str(exc))
        except EncryptionFailure as exc:
            return _error("encryption_failure", str(exc))
        ok = True
        return OperationResult(data=verification.model_dump(mode="json"))
    finally:
        record_latency(
            operation="mcp.verify_backup",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def restore_backup(
    filename: str,
    conflict_policy: str = "skip",
    validate_integrity: bool = True,
) -> OperationResult:
    """Restore activities from a backup artifact.

    Args:
        filename: Artifact name as returned by list_backups.
        conflict_policy: 'skip', 'replace_existing' or 'merge'.
        validate_integrity: Skip records whose signatures do not verify.
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("restore_backup")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        path = _backup_path(services, filename)
        if path is None:
            return _error("validation_error", "Invalid backup filename", status="rejected")
        try:
            result = await services.backup.restore(
                path,
                conflict_policy=conflict_policy,
                validate_integrity=validate_integrity,
            )
        except ValidationError as exc:
            return _error("validation_error", str(exc), status="rejected")
        ok = result.success
        return OperationResult(
            status="ok" if result.success else "error",
            error_code=None if result.success else "restore_failed",
            data=result.model_dump(mode="json"),
        )
    finally:
        record_latency(
            operation="mcp.restore_backup",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def list_backups() -> OperationResult:
    """List backup artifacts, newest first."""
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("list_backups")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        backups = await services.backup.list_backups()
        ok = True
        return OperationResult(data=[b.model_dump(mode="json") for b in backups])
    finally:
        record_latency(
            operation="mcp.list_backups",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def cleanup_backups(retention_days: int | None = None) -> OperationResult:
    """Delete backups older than the retention period.

    Args:
        retention_days: Keep backups newer than this many days (default 90).
    """
    start = perf_counter()
    ok = False
    try:
        services = _get_services()
        denied = _forbidden("cleanup_backups")
        if denied is not None:
            return _error("forbidden", denied, status="rejected")
        try:
            result = await services.backup.cleanup(retention_days)
        except TrailguardError as exc:
            return _error("validation_error", str(exc), status="rejected")
        ok = True
        return OperationResult(data=result.model_dump(mode="json"))
    finally:
        record_latency(
            operation="mcp.cleanup_backups",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )

