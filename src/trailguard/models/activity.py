"""Activity event data models."""

from __future__ import annotations

from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import field_validator

# Fields covered by the integrity signature, in signing order.
PROTECTED_FIELDS: tuple[str, ...] = (
    "type",
    "description",
    "causer_id",
    "subject_id",
    "created_at",
    "properties",
)

# Fields that may be changed after an event has been written.
BOOKKEEPING_FIELDS: tuple[str, ...] = ("archived_at", "deleted_at")


class ActivityResult(str, Enum):
    """Outcome of the recorded action."""

    success = "success"
    failed = "failed"
    warning = "warning"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventPayload(BaseModel):
    """Raw activity emitted by the host application, before signing."""

    model_config = {"frozen": True, "coerce_numbers_to_str": True}

    type: str = Field(
        min_length=1,
        max_length=100,
        description="Short category string, e.g. 'login' or 'users.delete'.",
    )
    description: str = Field(
        min_length=1,
        max_length=500,
        description="Human-readable summary of the action.",
    )
    causer_id: str | None = Field(
        default=None,
        description="Actor identifier; None for system-generated events.",
    )
    subject_id: str | None = Field(
        default=None,
        description="Identifier of the object acted upon.",
    )
    subject_type: str | None = Field(
        default=None,
        description="Kind of the object acted upon.",
    )
    module: str | None = Field(
        default=None,
        description="Functional area of the host application.",
    )
    properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured, JSON-safe context for the action.",
    )
    ip_address: str | None = Field(
        default=None,
        description="Origin IP address of the request.",
    )
    user_agent: str | None = Field(
        default=None,
        description="Client user agent string.",
    )
    result: ActivityResult = Field(
        default=ActivityResult.success,
        description="Outcome of the action.",
    )
    created_at: datetime | None = Field(
        default=None,
        description="Event time; defaults to now (UTC) at recording time.",
    )

    @field_validator("type", "description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class ActivityEvent(BaseModel):
    """A signed, immutable audit record."""

    model_config = {"frozen": True, "coerce_numbers_to_str": True}

    id: int | None = Field(
        default=None,
        description="Monotonic identifier assigned by the repository.",
    )
    type: str = Field(description="Short category string.")
    description: str = Field(description="Human-readable summary.")
    causer_id: str | None = Field(default=None, description="Actor identifier.")
    subject_id: str | None = Field(default=None, description="Subject identifier.")
    subject_type: str | None = Field(default=None, description="Subject kind.")
    module: str | None = Field(default=None, description="Functional area.")
    properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Filtered structured context.",
    )
    ip_address: str | None = Field(default=None, description="Origin IP address.")
    user_agent: str | None = Field(default=None, description="Client user agent.")
    result: ActivityResult = Field(
        default=ActivityResult.success,
        description="Outcome of the action.",
    )
    risk_level: int = Field(
        default=0,
        ge=0,
        le=10,
        description="Risk level computed at write time.",
    )
    signature: str | None = Field(
        default=None,
        description="Hex digest over the protected fields.",
    )
    signature_version: str | None = Field(
        default=None,
        description="Signing scheme version used for the signature.",
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        description="Timezone-aware UTC creation time.",
    )
    archived_at: datetime | None = Field(
        default=None,
        description="Bookkeeping: when the record was archived.",
    )
    deleted_at: datetime | None = Field(
        default=None,
        description="Bookkeeping: soft-delete marker.",
    )

    @field_validator("created_at", "archived_at", "deleted_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def protected_values(self) -> dict[str, Any]:
        """Return the signature-protected fields keyed by name."""
        return {name: getattr(self, name) for name in PROTECTED_FIELDS}


def changed_protected_fields(
    current: ActivityEvent,
    candidate: ActivityEvent,
) -> list[str]:
    """List protected fields whose values differ between two versions."""
    return [
        name
        for name in PROTECTED_FIELDS
        if getattr(current, name) != getattr(candidate, name)
    ]
