"""Pydantic models for the operator tool interface.

Input models validate tool arguments; output models shape responses.
FastMCP serializes Pydantic models automatically.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from trailguard.models.activity import ActivityResult


class RecordActivityInput(BaseModel):
    """Input for the record_activity tool."""

    type: str = Field(description="Activity category, e.g. 'users.delete'.")
    description: str = Field(description="Human-readable summary.")
    causer_id: str | None = Field(default=None, description="Acting user.")
    subject_id: str | None = Field(default=None, description="Affected object.")
    subject_type: str | None = Field(default=None, description="Affected object kind.")
    module: str | None = Field(default=None, description="Functional area.")
    properties: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    result: ActivityResult = Field(default=ActivityResult.success)


class RecordActivityResult(BaseModel):
    """Output of record_activity."""

    status: str = Field(
        default="recorded",
        description="'recorded', 'queued', 'suppressed', or 'rejected'.",
    )
    activity_id: int | None = Field(default=None)
    risk_level: int | None = Field(default=None)
    signature_version: str | None = Field(default=None)
    error_code: str | None = Field(default=None)
    message: str | None = Field(default=None)


class OperationResult(BaseModel):
    """Output of the analysis and backup tools."""

    status: str = Field(default="ok", description="'ok', 'error', or 'rejected'.")
    error_code: str | None = Field(default=None)
    message: str | None = Field(default=None)
    data: dict[str, Any] | list[dict[str, Any]] | None = Field(
        default=None,
        description="Serialized result payload.",
    )
