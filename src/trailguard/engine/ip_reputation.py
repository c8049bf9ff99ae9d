"""Shared set of IP addresses currently considered suspicious."""

from __future__ import annotations

from collections.abc import Iterable
from threading import Lock


class SuspiciousIPSet:
    """Copy-on-write set of suspicious IPs.

    Readers take an immutable ``snapshot()`` and never block; writers
    swap in a new frozenset under a lock and bump ``version``.
    """

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._lock = Lock()
        self._ips: frozenset[str] = frozenset(initial)
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> frozenset[str]:
        return self._ips

    def __contains__(self, ip: object) -> bool:
        return ip in self._ips

    def __len__(self) -> int:
        return len(self._ips)

    def add(self, *ips: str) -> None:
        self.update(ips)

    def update(self, ips: Iterable[str]) -> None:
        with self._lock:
            merged = self._ips.union(ips)
            if merged != self._ips:
                self._ips = merged
                self._version += 1

    def replace(self, ips: Iterable[str]) -> None:
        with self._lock:
            self._ips = frozenset(ips)
            self._version += 1

    def discard(self, ip: str) -> None:
        with self._lock:
            if ip in self._ips:
                self._ips = self._ips.difference({ip})
                self._version += 1
