"""Domain models for activity events, security analysis, and backups."""

from trailguard.models.activity import ActivityEvent
from trailguard.models.activity import ActivityResult
from trailguard.models.activity import as_utc
from trailguard.models.activity import BOOKKEEPING_FIELDS
from trailguard.models.activity import changed_protected_fields
from trailguard.models.activity import EventPayload
from trailguard.models.activity import PROTECTED_FIELDS
from trailguard.models.activity import utcnow
from trailguard.models.results import BackupInfo
from trailguard.models.results import BackupManifest
from trailguard.models.results import BackupResult
from trailguard.models.results import BackupStage
from trailguard.models.results import BackupVerification
from trailguard.models.results import CleanupResult
from trailguard.models.results import CorruptedRecord
from trailguard.models.results import EncryptionMetadata
from trailguard.models.results import PerformanceMetric
from trailguard.models.results import RestoreResult
from trailguard.models.results import VerificationReport
from trailguard.models.security import Anomaly
from trailguard.models.security import FailedLoginSummary
from trailguard.models.security import IPStat
from trailguard.models.security import PatternSummary
from trailguard.models.security import SecurityAlert
from trailguard.models.security import SecurityEvent
from trailguard.models.security import SecurityReport
from trailguard.models.security import Severity
from trailguard.models.security import SuspiciousIP

__all__ = [
    "ActivityEvent",
    "ActivityResult",
    "Anomaly",
    "BOOKKEEPING_FIELDS",
    "BackupInfo",
    "BackupManifest",
    "BackupResult",
    "BackupStage",
    "BackupVerification",
    "CleanupResult",
    "CorruptedRecord",
    "EncryptionMetadata",
    "EventPayload",
    "FailedLoginSummary",
    "IPStat",
    "PROTECTED_FIELDS",
    "PatternSummary",
    "PerformanceMetric",
    "RestoreResult",
    "SecurityAlert",
    "SecurityEvent",
    "SecurityReport",
    "Severity",
    "SuspiciousIP",
    "VerificationReport",
    "as_utc",
    "changed_protected_fields",
    "utcnow",
]
