"""MCP authentication helpers."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from collections.abc import Mapping

from fastmcp.server.auth import AccessToken
from fastmcp.server.auth import TokenVerifier

logger = logging.getLogger(__name__)

WILDCARD_SCOPE = "trailguard:all"


class APIKeyVerifier(TokenVerifier):
    """Static bearer-token verifier for operator requests."""

    def __init__(
        self,
        api_key: str,
        *,
        scopes: list[str] | None = None,
        claims: Mapping[str, object] | None = None,
    ) -> None:
        normalized = api_key.strip()
        if not normalized:
            raise ValueError("api_key must be a non-empty, non-whitespace string")
        super().__init__()
        self._api_key = normalized
        self._scopes = scopes[:] if scopes else [WILDCARD_SCOPE]
        self._claims = dict(claims or {})

    async def verify_token(self, token: str) -> AccessToken | None:
        """Return an access token when the bearer token matches the key."""
        if hmac.compare_digest(token.encode("utf-8"), self._api_key.encode("utf-8")):
            return AccessToken(
                token=token,
                client_id="trailguard-operator",
                scopes=self._scopes,
                expires_at=None,
                claims=self._claims,
            )

        logger.debug(
            "Rejected operator token (token_len=%d, token_fp=%s)",
            len(token),
            hashlib.sha256(token.encode("utf-8")).hexdigest()[:12],
        )
        return None


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def get_mcp_auth_scopes() -> list[str]:
    """Scopes granted to the static key, from comma-separated ``MCP_AUTH_SCOPES``."""
    raw = os.getenv("MCP_AUTH_SCOPES", "")
    parsed = [scope.strip() for scope in raw.split(",") if scope.strip()]
    return parsed if parsed else [WILDCARD_SCOPE]


def create_mcp_auth() -> APIKeyVerifier | None:
    """Create a verifier when ``MCP_AUTH_KEY`` is configured."""
    api_key = _env("MCP_AUTH_KEY")
    if api_key is None:
        return None
    claims: dict[str, object] = {}
    role = _env("MCP_AUTH_ROLE")
    if role is not None:
        claims["role"] = role
    return APIKeyVerifier(api_key, scopes=get_mcp_auth_scopes(), claims=claims)
