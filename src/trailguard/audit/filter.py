"""Sensitive data masking for activity properties.

Keys are matched case-insensitively as substrings of the configured
sensitive names (``user_password`` matches ``password``).  String values
are additionally matched against compiled value patterns so that, e.g.,
a card number stored under an innocuous key is still masked.
"""

from __future__ import annotations

import ipaddress
import math
import re
from collections.abc import Mapping
from typing import Any

from trailguard.config import FilterConfig
from trailguard.models import ActivityEvent

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


class SensitiveDataFilter:
    """Recursively masks sensitive keys and values.  Never raises."""

    def __init__(self, config: FilterConfig | None = None) -> None:
        self._config = config or FilterConfig()
        self._keys = tuple(key.lower() for key in self._config.sensitive_keys)
        patterns = [re.compile(p) for p in self._config.sensitive_value_patterns]
        if self._config.mask_emails:
            patterns.append(_EMAIL_RE)
        self._value_patterns = tuple(patterns)

    def filter(self, properties: Mapping[str, Any] | None) -> dict[str, Any]:
        """Return a masked copy of *properties*."""
        if not properties:
            return {}
        return self._filter_mapping(properties)

    def is_sensitive_key(self, key: object) -> bool:
        lowered = str(key).lower()
        return any(name in lowered for name in self._keys)

    def mask_value(self, value: str) -> str:
        """Keep the first and last few characters, mask the rest."""
        visible = self._config.visible_chars
        if len(value) <= visible * 2 + 2:
            return self._config.replacement
        hidden = len(value) - visible * 2
        return f"{value[:visible]}{'*' * hidden}{value[-visible:]}"

    # -- internal --

    def _filter_mapping(self, mapping: Mapping[Any, Any]) -> dict[str, Any]:
        filtered: dict[str, Any] = {}
        for key, value in mapping.items():
            name = str(key)
            if self.is_sensitive_key(name):
                filtered[name] = self._config.replacement
            else:
                filtered[name] = self._filter_value(value)
        return filtered

    def _filter_value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return self._filter_mapping(value)
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self._filter_value(item) for item in value]
        if isinstance(value, str):
            if any(p.search(value) for p in self._value_patterns):
                return self.mask_value(value)
            return value
        if isinstance(value, float) and not math.isfinite(value):
            # JSON has no NaN or Infinity; keep the value signable as text.
            return str(value)
        if value is None or isinstance(value, (bool, int, float)):
            return value
        return str(value)

    # -- view redaction --

    def redact_for_view(
        self,
        event: ActivityEvent,
        *,
        can_view_raw: bool = False,
    ) -> dict[str, Any]:
        """Return a display dict with origin details masked.

        Users with raw-view permission see the full record, signature included.
        """
        data = event.model_dump(mode="json")
        if can_view_raw:
            return data
        data["ip_address"] = mask_ip(event.ip_address)
        data["user_agent"] = mask_user_agent(
            event.user_agent, self._config.user_agent_max_length
        )
        data.pop("signature", None)
        data.pop("signature_version", None)
        return data


def mask_ip(ip: str | None) -> str | None:
    """Mask the host part of an address: ``10.1.2.3`` -> ``10.1.2.***``."""
    if not ip:
        return ip
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return "***"
    if parsed.version == 4:
        return ip.rsplit(".", 1)[0] + ".***"
    groups = parsed.exploded.split(":")
    return ":".join(groups[:4]) + ":****"


def mask_user_agent(user_agent: str | None, max_length: int = 50) -> str | None:
    if user_agent is None or len(user_agent) <= max_length:
        return user_agent
    return user_agent[:max_length] + "..."
