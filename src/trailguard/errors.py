"""Error taxonomy shared by all trailguard components."""

from __future__ import annotations


class TrailguardError(Exception):
    """Base class for every error raised by trailguard."""


class ValidationError(TrailguardError):
    """An event payload failed validation (not retryable)."""


class IntegrityViolation(TrailguardError):
    """A stored record's signature does not match its protected fields."""

    def __init__(self, message: str, *, event_id: int | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class TamperAttempt(TrailguardError):
    """A caller tried to mutate a signature-protected field."""

    def __init__(
        self,
        event_id: int | None,
        fields: list[str],
        *,
        severity: str = "medium",
    ) -> None:
        joined = ", ".join(fields)
        super().__init__(
            f"Attempt to modify protected fields of activity {event_id}: {joined}"
        )
        self.event_id = event_id
        self.fields = list(fields)
        self.severity = severity


class StorageError(TrailguardError):
    """Repository I/O failed; callers may retry."""


class QueueClosedError(TrailguardError):
    """The async recording queue is not accepting tasks."""


class BackupError(TrailguardError):
    """A backup or restore pipeline failed at a given stage."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class BackupCorruption(BackupError):
    """A backup artifact is missing, truncated, or fails its checksum."""


class EncryptionFailure(BackupError):
    """Encrypting or decrypting a backup payload failed."""
