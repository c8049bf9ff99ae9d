"""Result models for verification, backup, restore, and metrics."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel
from pydantic import Field

from trailguard.models.activity import utcnow


class CorruptedRecord(BaseModel):
    """A record whose signature did not verify."""

    model_config = {"frozen": True}

    id: int | None
    type: str
    created_at: datetime
    reason: str = "signature_mismatch"


class VerificationReport(BaseModel):
    """Outcome of a batch integrity verification."""

    success: bool = True
    total: int = 0
    verified: int = 0
    corrupted: list[CorruptedRecord] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False


class EncryptionMetadata(BaseModel):
    """How a backup payload was encrypted."""

    model_config = {"frozen": True}

    cipher: str = Field(description="Cipher name, e.g. 'aes-256-gcm'.")
    version: str = Field(default="1", description="Key-derivation scheme version.")
    kdf: str = Field(default="hkdf-sha256", description="Key-derivation function.")
    salt: str = Field(default="", description="Hex-encoded per-artifact KDF salt.")


class BackupManifest(BaseModel):
    """Header stored at the front of every backup artifact."""

    model_config = {"frozen": True}

    format_version: str = "1.0"
    filename: str
    record_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    checksum: str = Field(description="SHA-256 of the encrypted payload.")
    compression: str = "gzip"
    compression_ratio: float = 0.0
    original_size: int = 0
    compressed_size: int = 0
    encrypted_size: int = 0
    encryption_metadata: EncryptionMetadata
    date_from: datetime | None = None
    date_to: datetime | None = None
    include_deleted: bool = False


class BackupStage(str, Enum):
    """Stages of the backup job state machine."""

    collecting = "collecting"
    exporting = "exporting"
    compressing = "compressing"
    encrypting = "encrypting"
    checksumming = "checksumming"
    writing = "writing"
    completed = "completed"
    failed = "failed"


class BackupResult(BaseModel):
    success: bool
    stage: BackupStage
    failed_stage: BackupStage | None = None
    manifest: BackupManifest | None = None
    path: str | None = None
    integrity_failures: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class BackupVerification(BaseModel):
    valid: bool
    path: str
    checksum: str
    record_count: int = 0


class RestoreResult(BaseModel):
    """Outcome of a restore run."""

    success: bool
    imported: int = 0
    replaced: int = 0
    merged: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    rolled_back: bool = False
    stage: str | None = None


class BackupInfo(BaseModel):
    filename: str
    path: str
    size: int
    created_at: datetime
    record_count: int | None = None


class CleanupResult(BaseModel):
    deleted_count: int = 0
    reclaimed_bytes: int = 0
    deleted_files: list[str] = Field(default_factory=list)


class PerformanceMetric(BaseModel):
    """One persisted performance measurement."""

    model_config = {"frozen": True}

    metric_type: str
    operation: str
    value: float
    unit: str = "ms"
    recorded_at: datetime = Field(default_factory=utcnow)
