"""Scope-based authorization for operator tools.

Tool permissions mirror the activity-log actions: viewing, writing,
exporting (backups) and security auditing.  Roles expand to scope sets;
``trailguard:all`` grants everything.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from fastmcp.server.auth import AccessToken

from trailguard.auth import WILDCARD_SCOPE

VIEW_SCOPE = "activity:view"
WRITE_SCOPE = "activity:write"
EXPORT_SCOPE = "activity:export"
AUDIT_SCOPE = "security:audit"

_ROLE_SCOPES: dict[str, set[str]] = {
    "viewer": {VIEW_SCOPE},
    "recorder": {WRITE_SCOPE},
    "auditor": {VIEW_SCOPE, AUDIT_SCOPE},
    "admin": {VIEW_SCOPE, WRITE_SCOPE, EXPORT_SCOPE, AUDIT_SCOPE},
}

_TOOL_REQUIRED_SCOPES: dict[str, set[str]] = {
    "record_activity": {WRITE_SCOPE},
    "verify_integrity": {AUDIT_SCOPE},
    "check_suspicious_ips": {AUDIT_SCOPE},
    "detect_anomalies": {AUDIT_SCOPE},
    "identify_patterns": {VIEW_SCOPE, AUDIT_SCOPE},
    "security_report": {AUDIT_SCOPE},
    "create_backup": {EXPORT_SCOPE},
    "verify_backup": {EXPORT_SCOPE, AUDIT_SCOPE},
    "restore_backup": {EXPORT_SCOPE},
    "list_backups": {EXPORT_SCOPE, AUDIT_SCOPE},
    "cleanup_backups": {EXPORT_SCOPE},
}

_AUTHZ_ENV = "MCP_AUTHZ_ENABLED"


@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    error_code: str | None = None
    message: str | None = None


def is_authorization_enabled() -> bool:
    raw = os.getenv(_AUTHZ_ENV, "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _roles(claims: dict[str, Any]) -> set[str]:
    roles: set[str] = set()
    role = claims.get("role")
    if isinstance(role, str) and role.strip():
        roles.add(role.strip())
    role_list = claims.get("roles")
    if isinstance(role_list, list):
        roles.update(r.strip() for r in role_list if isinstance(r, str) and r.strip())
    return roles


def effective_scopes(token: AccessToken | None) -> set[str]:
    if token is None:
        return set()
    scopes = {scope.strip() for scope in token.scopes if scope.strip()}
    claims = token.claims if isinstance(token.claims, dict) else {}
    for role in _roles(claims):
        scopes.update(_ROLE_SCOPES.get(role, set()))
    return scopes


def authorize_tool(tool_name: str, token: AccessToken | None) -> AuthorizationDecision:
    """Decide whether *token* may call *tool_name*."""
    if not is_authorization_enabled():
        return AuthorizationDecision(allowed=True)

    required = _TOOL_REQUIRED_SCOPES.get(tool_name, {WILDCARD_SCOPE})
    scopes = effective_scopes(token)
    if WILDCARD_SCOPE in scopes or scopes & required:
        return AuthorizationDecision(allowed=True)
    return AuthorizationDecision(
        allowed=False,
        error_code="forbidden",
        message=(
            f"Insufficient scope for {tool_name}. "
            f"Required one of: {', '.join(sorted(required))}."
        ),
    )
