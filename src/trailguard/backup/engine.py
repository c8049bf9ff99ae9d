"""Encrypted, compressed backups of the activity log.

Artifact layout (``<prefix>_<YYYYmmdd_HHMMSS_ffffff>.encrypted``)::

    TRAILGUARD-BACKUP/1\\n
    <manifest JSON>\\n
    <ciphertext>

The manifest header is readable without the key, so ``list_backups`` and
``verify_backup_integrity`` can triage artifacts cheaply.  The checksum
in the manifest is the SHA-256 of the ciphertext.  Artifacts are written
to a ``.partial`` file and renamed only once complete.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from time import perf_counter
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from trailguard.audit.integrity import IntegritySigner
from trailguard.backup import codec
from trailguard.config import BackupConfig
from trailguard.errors import BackupCorruption
from trailguard.errors import BackupError
from trailguard.errors import ValidationError
from trailguard.models import ActivityEvent
from trailguard.models import as_utc
from trailguard.models import BackupInfo
from trailguard.models import BackupManifest
from trailguard.models import BackupResult
from trailguard.models import BackupStage
from trailguard.models import BackupVerification
from trailguard.models import BOOKKEEPING_FIELDS
from trailguard.models import changed_protected_fields
from trailguard.models import CleanupResult
from trailguard.models import EncryptionMetadata
from trailguard.models import RestoreResult
from trailguard.models import utcnow
from trailguard.observability import MetricsRecorder
from trailguard.observability import record_latency
from trailguard.storage import EventCriteria
from trailguard.storage import EventRepository
from trailguard.storage import iter_event_chunks

logger = logging.getLogger(__name__)

MAGIC = b"TRAILGUARD-BACKUP/1\n"
EXPORT_VERSION = "1.0"
CONFLICT_POLICIES = ("skip", "replace_existing", "merge")
_SUFFIX = ".encrypted"
_PARTIAL_SUFFIX = ".partial"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _write_artifact(partial: Path, final: Path, data: bytes) -> None:
    partial.write_bytes(data)
    os.replace(partial, final)


async def _discard_artifact(state: dict[str, Any]) -> None:
    """Wait for an in-flight write, then remove whatever it left behind."""
    write = state.get("write")
    if write is not None:
        await asyncio.gather(write, return_exceptions=True)
    for path in state.get("artifacts", ()):
        path.unlink(missing_ok=True)


def read_artifact(path: Path) -> tuple[BackupManifest, bytes]:
    """Split an artifact into its manifest and ciphertext."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise BackupCorruption(f"Backup not found: {path}", stage="verifying") from exc
    except OSError as exc:
        raise BackupCorruption(f"Backup unreadable: {exc}", stage="verifying") from exc

    if not raw.startswith(MAGIC):
        raise BackupCorruption(f"Not a trailguard backup: {path.name}", stage="verifying")
    header_end = raw.find(b"\n", len(MAGIC))
    if header_end < 0:
        raise BackupCorruption(f"Backup header truncated: {path.name}", stage="verifying")
    try:
        manifest = BackupManifest.model_validate_json(raw[len(MAGIC) : header_end])
    except PydanticValidationError as exc:
        raise BackupCorruption(
            f"Backup manifest invalid: {path.name}", stage="verifying"
        ) from exc
    return manifest, raw[header_end + 1 :]


class BackupEngine:
    """Creates, verifies, restores, lists and prunes backup artifacts."""

    def __init__(
        self,
        repository: EventRepository,
        *,
        signer: IntegritySigner | None = None,
        config: BackupConfig | None = None,
        metrics: MetricsRecorder | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._signer = signer or IntegritySigner()
        self._config = config or BackupConfig()
        self._metrics = metrics or MetricsRecorder(None)
        self._clock = clock
        if self._config.compression not in codec.COMPRESSIONS:
            raise ValueError(f"Unsupported compression: {self._config.compression!r}")
        if self._config.cipher not in codec.CIPHERS:
            raise ValueError(f"Unsupported cipher: {self._config.cipher!r}")

    @property
    def directory(self) -> Path:
        return Path(self._config.directory)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_backup(
        self,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        include_deleted: bool = False,
    ) -> BackupResult:
        """Run the full backup pipeline and return its outcome.

        Any failure aborts the job, removes the partial artifact, and
        reports the stage that failed.
        """
        start = perf_counter()
        state: dict[str, Any] = {"stage": BackupStage.collecting}
        try:
            result = await asyncio.wait_for(
                self._create(state, date_from, date_to, include_deleted),
                timeout=self._config.timeout_seconds,
            )
        except Exception as exc:
            failed_stage: BackupStage = state["stage"]
            await _discard_artifact(state)
            if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
                message = f"Backup timed out during {failed_stage.value}"
            else:
                message = f"Backup failed during {failed_stage.value}: {exc}"
            logger.exception(message)
            record_latency(
                operation="backup.create",
                duration_ms=(perf_counter() - start) * 1000,
                ok=False,
            )
            return BackupResult(
                success=False,
                stage=BackupStage.failed,
                failed_stage=failed_stage,
                errors=[message],
            )

        duration_ms = (perf_counter() - start) * 1000
        record_latency(operation="backup.create", duration_ms=duration_ms, ok=True)
        await self._metrics.record("backup", "create", duration_ms)
        if result.manifest is not None:
            await self._metrics.record(
                "backup", "compression_ratio", result.manifest.compression_ratio, unit="%"
            )
        return result

    async def _create(
        self,
        state: dict[str, Any],
        date_from: datetime | None,
        date_to: datetime | None,
        include_deleted: bool,
    ) -> BackupResult:
        cfg = self._config
        date_from = as_utc(date_from)
        date_to = as_utc(date_to)
        criteria = EventCriteria(
            since=date_from,
            until=date_to,
            include_deleted=include_deleted,
        )

        state["stage"] = BackupStage.collecting
        records: list[dict[str, Any]] = []
        integrity_failures: list[int] = []
        async for chunk in iter_event_chunks(
            self._repo, criteria, chunk_size=cfg.chunk_size
        ):
            for event in chunk:
                if not self._signer.verify(event) and event.id is not None:
                    integrity_failures.append(event.id)
                records.append(event.model_dump(mode="json"))
        if integrity_failures:
            logger.warning(
                "Exporting %d activities that fail integrity verification",
                len(integrity_failures),
            )

        now = self._clock()
        filename = f"{cfg.prefix}_{now.strftime('%Y%m%d_%H%M%S_%f')}{_SUFFIX}"

        state["stage"] = BackupStage.exporting
        document = {
            "metadata": {
                "export_version": EXPORT_VERSION,
                "exported_at": now.isoformat(),
                "total_records": len(records),
                "date_range": {
                    "from": date_from.isoformat() if date_from else None,
                    "to": date_to.isoformat() if date_to else None,
                },
                "include_deleted": include_deleted,
                "integrity_failures": integrity_failures,
            },
            "activities": records,
        }
        exported = json.dumps(document, separators=(",", ":")).encode("utf-8")

        state["stage"] = BackupStage.compressing
        compressed = await asyncio.to_thread(codec.compress, exported, cfg.compression)

        state["stage"] = BackupStage.encrypting
        salt = codec.new_salt()
        encrypted = await asyncio.to_thread(
            lambda: codec.encrypt(
                compressed, cipher=cfg.cipher, secret=cfg.secret, salt=salt
            )
        )

        state["stage"] = BackupStage.checksumming
        checksum = await asyncio.to_thread(_sha256, encrypted)
        manifest = BackupManifest(
            filename=filename,
            record_count=len(records),
            created_at=now,
            checksum=checksum,
            compression=cfg.compression,
            compression_ratio=codec.compression_ratio(len(exported), len(compressed)),
            original_size=len(exported),
            compressed_size=len(compressed),
            encrypted_size=len(encrypted),
            encryption_metadata=EncryptionMetadata(cipher=cfg.cipher, salt=salt.hex()),
            date_from=date_from,
            date_to=date_to,
            include_deleted=include_deleted,
        )

        self.directory.mkdir(parents=True, exist_ok=True)
        final = self.directory / filename
        partial = final.with_name(final.name + _PARTIAL_SUFFIX)
        header = manifest.model_dump_json().encode("utf-8")

        state["stage"] = BackupStage.writing
        state["artifacts"] = (partial, final)
        # Shielded: a timeout must not abandon a thread that can still rename.
        write = asyncio.ensure_future(
            asyncio.to_thread(
                _write_artifact, partial, final, MAGIC + header + b"\n" + encrypted
            )
        )
        state["write"] = write
        await asyncio.shield(write)
        state.pop("artifacts")

        state["stage"] = BackupStage.completed
        logger.info(
            "Backup %s created: records=%d ratio=%.2f%%",
            filename,
            manifest.record_count,
            manifest.compression_ratio,
        )
        return BackupResult(
            success=True,
            stage=BackupStage.completed,
            manifest=manifest,
            path=str(final),
            integrity_failures=integrity_failures,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify_backup_integrity(
        self,
        path: str | Path,
        *,
        deep: bool = False,
    ) -> BackupVerification:
        """Recompute the ciphertext checksum and compare with the manifest.

        Raises ``BackupCorruption`` when the artifact is missing or the
        checksums disagree.  With *deep*, the payload is also decrypted
        and parsed (``EncryptionFailure`` on key or cipher errors).
        """
        artifact = Path(path)
        manifest, ciphertext = await self._load_verified(artifact)
        if deep:
            await asyncio.to_thread(self._decode_payload, manifest, ciphertext)
        return BackupVerification(
            valid=True,
            path=str(artifact),
            checksum=manifest.checksum,
            record_count=manifest.record_count,
        )

    async def _load_verified(self, artifact: Path) -> tuple[BackupManifest, bytes]:
        manifest, ciphertext = await asyncio.to_thread(read_artifact, artifact)
        actual = await asyncio.to_thread(_sha256, ciphertext)
        if not hmac.compare_digest(actual, manifest.checksum):
            raise BackupCorruption(
                f"Checksum mismatch for {artifact.name}", stage="verifying"
            )
        return manifest, ciphertext

    def _decode_payload(
        self,
        manifest: BackupManifest,
        ciphertext: bytes,
    ) -> dict[str, Any]:
        meta = manifest.encryption_metadata
        try:
            salt = bytes.fromhex(meta.salt)
        except ValueError as exc:
            raise BackupCorruption("Backup salt is malformed", stage="decrypting") from exc
        compressed = codec.decrypt(
            ciphertext, cipher=meta.cipher, secret=self._config.secret, salt=salt
        )
        try:
            exported = codec.decompress(compressed, manifest.compression)
            document = json.loads(exported)
        except codec.DECODE_ERRORS as exc:
            raise BackupCorruption(
                f"Backup payload unreadable: {exc}", stage="decompressing"
            ) from exc
        if not isinstance(document, dict) or not isinstance(
            document.get("activities"), list
        ):
            raise BackupCorruption("Backup payload has no activity list", stage="parsing")
        return document

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self,
        path: str | Path,
        *,
        conflict_policy: str = "skip",
        validate_integrity: bool = True,
    ) -> RestoreResult:
        """Verify, decode and import a backup.

        Per-record problems are collected in ``errors``; a fatal failure
        rolls back every write made by this restore.
        """
        if conflict_policy not in CONFLICT_POLICIES:
            raise ValidationError(
                f"conflict_policy must be one of {', '.join(CONFLICT_POLICIES)}"
            )

        start = perf_counter()
        artifact = Path(path)
        stage = "verifying"
        try:
            manifest, ciphertext = await self._load_verified(artifact)
            stage = "decrypting"
            document = await asyncio.wait_for(
                asyncio.to_thread(self._decode_payload, manifest, ciphertext),
                timeout=self._config.timeout_seconds,
            )
        except (BackupError, TimeoutError) as exc:
            failed = getattr(exc, "stage", None) or stage
            logger.error("Restore of %s failed during %s: %s", artifact.name, failed, exc)
            record_latency(
                operation="backup.restore",
                duration_ms=(perf_counter() - start) * 1000,
                ok=False,
            )
            return RestoreResult(
                success=False, stage=failed, errors=[str(exc) or "timed out"]
            )

        result = RestoreResult(success=True)
        undo: list[Callable[[], Any]] = []
        try:
            await asyncio.wait_for(
                self._import(
                    document["activities"],
                    conflict_policy,
                    validate_integrity,
                    result,
                    undo,
                ),
                timeout=self._config.timeout_seconds,
            )
        except Exception as exc:
            logger.exception("Restore of %s failed; rolling back", artifact.name)
            await self._rollback(undo)
            result = RestoreResult(
                success=False,
                stage="importing",
                rolled_back=True,
                errors=[*result.errors, f"Restore aborted: {exc}"],
            )

        record_latency(
            operation="backup.restore",
            duration_ms=(perf_counter() - start) * 1000,
            ok=result.success,
        )
        logger.info(
            "Restore of %s: imported=%d replaced=%d merged=%d skipped=%d errors=%d",
            artifact.name,
            result.imported,
            result.replaced,
            result.merged,
            result.skipped,
            len(result.errors),
        )
        return result

    async def _import(
        self,
        records: list[Any],
        conflict_policy: str,
        validate_integrity: bool,
        result: RestoreResult,
        undo: list[Callable[[], Any]],
    ) -> None:
        for index, record in enumerate(records):
            try:
                event = ActivityEvent.model_validate(record)
            except PydanticValidationError as exc:
                result.errors.append(f"record {index}: invalid ({exc.error_count()} errors)")
                result.skipped += 1
                continue
            if validate_integrity and not self._signer.verify(event):
                result.errors.append(f"record {index} (id {event.id}): signature mismatch")
                result.skipped += 1
                continue

            existing = await self._repo.get(event.id) if event.id is not None else None
            if existing is None:
                stored = await self._repo.add(event)
                undo.append(lambda event_id=stored.id: self._repo.delete(event_id))
                result.imported += 1
            elif conflict_policy == "skip":
                result.skipped += 1
            elif conflict_policy == "replace_existing":
                await self._repo.put(event)
                undo.append(lambda previous=existing: self._repo.put(previous))
                result.replaced += 1
            else:
                merged = self._merged(existing, event)
                if merged is None:
                    result.errors.append(
                        f"record {index} (id {event.id}): conflicts with stored activity"
                    )
                    result.skipped += 1
                elif merged == existing:
                    result.skipped += 1
                else:
                    await self._repo.put(merged)
                    undo.append(lambda previous=existing: self._repo.put(previous))
                    result.merged += 1

    @staticmethod
    def _merged(existing: ActivityEvent, incoming: ActivityEvent) -> ActivityEvent | None:
        """Fill empty bookkeeping fields from *incoming*; None on protected conflict."""
        if changed_protected_fields(existing, incoming):
            return None
        updates = {
            name: getattr(incoming, name)
            for name in BOOKKEEPING_FIELDS
            if getattr(existing, name) is None and getattr(incoming, name) is not None
        }
        return existing.model_copy(update=updates) if updates else existing

    async def _rollback(self, undo: list[Callable[[], Any]]) -> None:
        for action in reversed(undo):
            try:
                await action()
            except Exception:
                logger.exception("Rollback step failed")

    # ------------------------------------------------------------------
    # List / cleanup
    # ------------------------------------------------------------------

    async def list_backups(self) -> list[BackupInfo]:
        """Return backups in the configured directory, newest first."""
        return await asyncio.to_thread(self._list_backups)

    def _list_backups(self) -> list[BackupInfo]:
        directory = self.directory
        if not directory.is_dir():
            return []
        infos: list[BackupInfo] = []
        for path in directory.glob(f"{self._config.prefix}_*{_SUFFIX}"):
            stat = path.stat()
            try:
                manifest, _ = read_artifact(path)
                created_at = manifest.created_at
                record_count: int | None = manifest.record_count
            except BackupCorruption:
                logger.warning("Unreadable backup manifest: %s", path.name)
                created_at = datetime.fromtimestamp(stat.st_mtime).astimezone()
                record_count = None
            infos.append(
                BackupInfo(
                    filename=path.name,
                    path=str(path),
                    size=stat.st_size,
                    created_at=created_at,
                    record_count=record_count,
                )
            )
        infos.sort(key=lambda info: info.created_at, reverse=True)
        return infos

    async def cleanup(self, retention_days: int | None = None) -> CleanupResult:
        """Delete backups older than *retention_days* (default from config)."""
        days = self._config.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValidationError("retention_days must not be negative")
        cutoff = self._clock() - timedelta(days=days)
        result = CleanupResult()
        for info in await self.list_backups():
            if info.created_at >= cutoff:
                continue
            try:
                await asyncio.to_thread(Path(info.path).unlink)
            except FileNotFoundError:
                continue
            result.deleted_count += 1
            result.reclaimed_bytes += info.size
            result.deleted_files.append(info.filename)
        if result.deleted_count:
            logger.info(
                "Backup cleanup removed %d file(s), %d bytes",
                result.deleted_count,
                result.reclaimed_bytes,
            )
        return result
