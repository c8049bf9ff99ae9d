"""Audit subsystem: masking, signing, and recording of activity events."""

from trailguard.audit.filter import mask_ip
from trailguard.audit.filter import mask_user_agent
from trailguard.audit.filter import SensitiveDataFilter
from trailguard.audit.integrity import IntegritySigner
from trailguard.audit.queue import AsyncEventQueue
from trailguard.audit.queue import RecordTask
from trailguard.audit.recorder import EventRecorder

__all__ = [
    "AsyncEventQueue",
    "EventRecorder",
    "IntegritySigner",
    "RecordTask",
    "SensitiveDataFilter",
    "mask_ip",
    "mask_user_agent",
]
