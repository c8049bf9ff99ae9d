"""Application configuration dataclasses.

Frozen dataclasses with defaults for each subsystem, grouped under
``TrailguardConfig``.  Values can be overridden at construction time;
``config_from_env()`` fills the secrets and paths from ``TRAILGUARD_*``
environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace


def _default_secrets() -> dict[str, str]:
    return {"v1": "trailguard-development-secret"}


@dataclass(frozen=True)
class IntegrityConfig:
    """Signing scheme for activity events."""

    algorithm: str = "sha256"
    current_version: str = "v1"
    # Secrets by scheme version; old versions stay to verify legacy records.
    secrets: dict[str, str] = field(default_factory=_default_secrets)
    chunk_size: int = 1000


@dataclass(frozen=True)
class FilterConfig:
    """Sensitive key names and value patterns masked before storage."""

    sensitive_keys: tuple[str, ...] = (
        "password",
        "passwd",
        "token",
        "secret",
        "api_key",
        "apikey",
        "private_key",
        "credit_card",
        "card_number",
        "cvv",
        "ssn",
        "authorization",
    )
    sensitive_value_patterns: tuple[str, ...] = (
        # Card numbers: 13-19 digits with optional separators.
        r"^(?:\d[ -]?){12,18}\d$",
        # JWT-shaped bearer tokens.
        r"^eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$",
        # US social security numbers.
        r"^\d{3}-\d{2}-\d{4}$",
    )
    mask_emails: bool = False
    replacement: str = "[FILTERED]"
    visible_chars: int = 2
    user_agent_max_length: int = 50


@dataclass(frozen=True)
class RiskConfig:
    """Risk scoring weights.  Defaults are calibrated, not normative."""

    type_weights: dict[str, int] = field(
        default_factory=lambda: {
            "login": 5,
            "logout": 0,
            "view": 2,
            "create": 5,
            "update": 5,
            "delete": 15,
            "export": 10,
            "users.delete": 15,
            "roles.assign": 30,
            "permissions.grant": 30,
            "user.promote": 30,
            "system": 20,
            "config": 20,
            "security": 25,
        }
    )
    default_type_weight: int = 5
    failed_login_points: int = 20
    failed_action_points: int = 10
    recent_failure_points: int = 5
    recent_failure_cap: int = 20
    suspicious_ip_points: int = 40
    external_ip_points: int = 10
    missing_ip_points: int = 5
    internal_networks: tuple[str, ...] = (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "::1/128",
    )
    bulk_threshold: int = 10
    bulk_points_per_step: int = 5
    bulk_points_cap: int = 20
    business_hours_start: int = 9
    business_hours_end: int = 18
    business_days: tuple[int, ...] = (0, 1, 2, 3, 4)
    off_hours_multiplier: float = 1.5


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds for anomaly detection and IP reputation."""

    frequency_threshold: int = 100
    brute_force_threshold: int = 5
    brute_force_window_minutes: int = 60
    off_hours_ratio: float = 0.3
    off_hours_min_events: int = 10
    # Off hours are hour >= start or hour < end (UTC).
    off_hours_start: int = 21
    off_hours_end: int = 8
    ip_switch_window_minutes: int = 60
    credential_stuffing_min_ips: int = 3
    credential_stuffing_min_attempts: int = 5
    dangerous_sequences: tuple[tuple[str, ...], ...] = (
        ("login", "users.view", "users.delete"),
        ("login", "roles.create", "permissions.assign"),
    )
    suspicious_ip_lookback_days: int = 7
    suspicious_ip_threshold: int = 70
    ip_failure_points: int = 6
    ip_failure_cap: int = 48
    ip_brute_force_points: int = 25
    ip_account_points: int = 5
    ip_account_cap: int = 20
    ip_external_points: int = 10
    ip_high_rate_points: int = 10
    ip_high_rate_per_hour: int = 60
    baseline_windows: int = 4
    anomaly_score_k: float = 3.0
    chunk_size: int = 1000


@dataclass(frozen=True)
class AlertConfig:
    """Severity floor below which no alert is produced."""

    alert_floor: str = "medium"
    recent_failure_window_minutes: int = 60


@dataclass(frozen=True)
class BackupConfig:
    """Backup artifact location, codecs, and key material."""

    directory: str = "trailguard_backups"
    prefix: str = "activity_backup"
    compression: str = "gzip"
    cipher: str = "aes-256-gcm"
    secret: str = "trailguard-development-backup-key"
    chunk_size: int = 1000
    retention_days: int = 90
    timeout_seconds: float = 600.0


@dataclass(frozen=True)
class QueueConfig:
    """Async recording queue sizing and retry policy."""

    workers: int = 4
    max_queue_size: int = 10_000
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    duplicate_window_seconds: int = 300
    suppress_duplicates: bool = True
    max_dead_letters: int = 1_000


@dataclass(frozen=True)
class MetricsConfig:
    """Performance metric persistence."""

    enabled: bool = True


@dataclass(frozen=True)
class TrailguardConfig:
    """Aggregate configuration injected into every component."""

    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def config_from_env(base: TrailguardConfig | None = None) -> TrailguardConfig:
    """Return *base* with secrets and paths overridden from the environment.

    Recognised variables: ``TRAILGUARD_INTEGRITY_SECRET``,
    ``TRAILGUARD_INTEGRITY_VERSION``, ``TRAILGUARD_BACKUP_SECRET``,
    ``TRAILGUARD_BACKUP_DIR``.
    """
    cfg = base or TrailguardConfig()

    integrity = cfg.integrity
    secret = _env("TRAILGUARD_INTEGRITY_SECRET")
    version = _env("TRAILGUARD_INTEGRITY_VERSION") or integrity.current_version
    if secret is not None:
        secrets = dict(integrity.secrets)
        secrets[version] = secret
        integrity = replace(integrity, secrets=secrets, current_version=version)

    backup = cfg.backup
    backup_secret = _env("TRAILGUARD_BACKUP_SECRET")
    if backup_secret is not None:
        backup = replace(backup, secret=backup_secret)
    backup_dir = _env("TRAILGUARD_BACKUP_DIR")
    if backup_dir is not None:
        backup = replace(backup, directory=backup_dir)

    return replace(cfg, integrity=integrity, backup=backup)
