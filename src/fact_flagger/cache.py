"""FingerprintCache — content-addressed classification cache with TTL.

Keys are ``modelVersion::pageUrl::normalizedText`` (see
``normalize.fingerprint``). The cache is a pure lookup table: it never
classifies anything itself.

Usage:
    cache = FingerprintCache()
    key = fingerprint(url, text, "prompt-v1")
    cache.put(key, {"category": "hyperbole", "confidence": 0.6, "rationale": "..."})
    cache.get(key)     # → the dict, until 24h have passed
"""

from __future__ import annotations
import time
from typing import Any, Callable

from .types import CacheEntry

CACHE_TTL_MS = 24 * 60 * 60 * 1000


def _now_ms() -> float:
    return time.time() * 1000


class FingerprintCache:
    """In-memory fingerprint → classification table."""

    __slots__ = ("_entries", "_ttl_ms", "_clock")

    def __init__(
        self,
        *,
        ttl_ms: float = CACHE_TTL_MS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._ttl_ms = ttl_ms
        self._clock = clock or _now_ms

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    def get(self, key: str) -> dict[str, Any] | None:
        """Return a copy of the live classification for key, or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            return None
        return dict(entry.classification)

    def put(self, key: str, classification: dict[str, Any]) -> CacheEntry:
        entry = CacheEntry(key=key, classification=dict(classification), stored_at_ms=self._clock())
        self._entries[key] = entry
        return entry

    def prune(self) -> int:
        """Drop expired entries; returns how many were dropped."""
        stale = [k for k, e in self._entries.items() if self._expired(e)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def _expired(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.stored_at_ms) >= self._ttl_ms

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._entries)

    def dump(self) -> dict[str, dict[str, Any]]:
        """Return a copy of key → classification (for debugging)."""
        return {k: dict(e.classification) for k, e in self._entries.items()}

    def clear(self) -> None:
        self._entries.clear()
