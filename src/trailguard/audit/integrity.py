"""Keyed-hash signing and verification of activity events.

The signature covers the protected fields serialized as canonical JSON
(sorted keys, compact separators, UTC timestamps with microseconds).
The scheme version is part of the signed message, so a record can only
be verified with the secret of the version it was signed under.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from typing import Any

from trailguard.config import IntegrityConfig
from trailguard.errors import IntegrityViolation
from trailguard.models import ActivityEvent
from trailguard.models import CorruptedRecord
from trailguard.models import VerificationReport
from trailguard.storage import EventCriteria
from trailguard.storage import EventRepository
from trailguard.storage import iter_event_chunks

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

CorruptionSink = Callable[[list[CorruptedRecord]], Awaitable[None]]


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def canonical_payload(event: ActivityEvent) -> str:
    """Serialize the protected fields deterministically."""
    values: dict[str, Any] = event.protected_values()
    values["created_at"] = format_timestamp(event.created_at)
    return json.dumps(
        values,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


class IntegritySigner:
    """Signs events with the current scheme and verifies any known scheme."""

    def __init__(self, config: IntegrityConfig | None = None) -> None:
        self._config = config or IntegrityConfig()
        # Fail fast on an unsupported hash algorithm.
        hashlib.new(self._config.algorithm)
        if self._config.current_version not in self._config.secrets:
            raise ValueError(
                f"No secret configured for signature version "
                f"{self._config.current_version!r}"
            )

    @property
    def current_version(self) -> str:
        return self._config.current_version

    def _digest(self, event: ActivityEvent, version: str) -> str | None:
        secret = self._config.secrets.get(version)
        if secret is None:
            return None
        message = f"{version}|{canonical_payload(event)}".encode("utf-8")
        return hmac.new(
            secret.encode("utf-8"), message, self._config.algorithm
        ).hexdigest()

    # -- sign --

    def sign(self, event: ActivityEvent) -> tuple[str, str]:
        """Return ``(signature, version)`` for *event* under the current scheme."""
        version = self._config.current_version
        digest = self._digest(event, version)
        assert digest is not None
        return digest, version

    def sign_event(self, event: ActivityEvent) -> ActivityEvent:
        signature, version = self.sign(event)
        return event.model_copy(
            update={"signature": signature, "signature_version": version}
        )

    # -- verify --

    def verify(self, event: ActivityEvent) -> bool:
        """Recompute the signature and compare in constant time."""
        if not event.signature or not event.signature_version:
            return False
        expected = self._digest(event, event.signature_version)
        if expected is None:
            return False
        return hmac.compare_digest(expected, event.signature)

    def assert_intact(self, event: ActivityEvent) -> None:
        if not self.verify(event):
            raise IntegrityViolation(
                f"Integrity check failed for activity {event.id}",
                event_id=event.id,
            )

    def needs_resign(self, event: ActivityEvent) -> bool:
        """True when *event* was signed under a non-current scheme version."""
        return event.signature_version != self._config.current_version

    async def verify_batch(
        self,
        repository: EventRepository,
        criteria: EventCriteria | None = None,
        *,
        chunk_size: int | None = None,
        cancel: asyncio.Event | None = None,
        on_corrupted: CorruptionSink | None = None,
    ) -> VerificationReport:
        """Verify every matching record, collecting failures.

        Each record is classified independently; a broken record never
        stops the scan.  *cancel* is checked between chunks.
        """
        size = chunk_size or self._config.chunk_size
        report = VerificationReport()

        try:
            async for chunk in iter_event_chunks(
                repository, criteria, chunk_size=size
            ):
                if cancel is not None and cancel.is_set():
                    report.cancelled = True
                    break
                chunk_corrupted: list[CorruptedRecord] = []
                for event in chunk:
                    report.total += 1
                    try:
                        intact = self.verify(event)
                    except Exception as exc:
                        report.errors.append(f"activity {event.id}: {exc}")
                        continue
                    if intact:
                        report.verified += 1
                    else:
                        chunk_corrupted.append(
                            CorruptedRecord(
                                id=event.id,
                                type=event.type,
                                created_at=event.created_at,
                            )
                        )
                if chunk_corrupted:
                    report.corrupted.extend(chunk_corrupted)
                    await self._notify(chunk_corrupted, on_corrupted)
        except Exception as exc:
            logger.exception("Integrity scan aborted by repository failure")
            report.errors.append(f"scan aborted: {exc}")

        report.success = not (report.corrupted or report.errors or report.cancelled)
        return report

    async def _notify(
        self,
        corrupted: list[CorruptedRecord],
        sink: CorruptionSink | None,
    ) -> None:
        for record in corrupted:
            logger.warning(
                "Activity log integrity violation id=%s type=%s created_at=%s",
                record.id,
                record.type,
                record.created_at.isoformat(),
            )
        if sink is None:
            return
        try:
            await sink(corrupted)
        except Exception:
            logger.exception("Corruption notification sink failed")
