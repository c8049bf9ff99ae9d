"""Security analytics engine: risk, detection, alerts."""

from trailguard.engine.alerts import AlertGenerator
from trailguard.engine.alerts import CollectingChannel
from trailguard.engine.alerts import LoggingChannel
from trailguard.engine.alerts import NotificationChannel
from trailguard.engine.analyzer import AnalysisResult
from trailguard.engine.analyzer import SecurityAnalyzer
from trailguard.engine.detection import AnomalyDetector
from trailguard.engine.detection import parse_time_range
from trailguard.engine.ip_reputation import SuspiciousIPSet
from trailguard.engine.risk import RiskAssessment
from trailguard.engine.risk import RiskContext
from trailguard.engine.risk import RiskScorer
from trailguard.engine.security_events import SecurityEventDetector

__all__ = [
    "AlertGenerator",
    "AnalysisResult",
    "AnomalyDetector",
    "CollectingChannel",
    "LoggingChannel",
    "NotificationChannel",
    "RiskAssessment",
    "RiskContext",
    "RiskScorer",
    "SecurityAnalyzer",
    "SecurityEventDetector",
    "SuspiciousIPSet",
    "parse_time_range",
]
