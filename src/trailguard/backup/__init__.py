"""Backup subsystem: encrypted, compressed activity log archives."""

from trailguard.backup.engine import BackupEngine
from trailguard.backup.engine import CONFLICT_POLICIES
from trailguard.backup.engine import read_artifact

__all__ = [
    "BackupEngine",
    "CONFLICT_POLICIES",
    "read_artifact",
]
