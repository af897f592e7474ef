"""Durable fingerprint cache backed by SQLite — survives process restarts.

Drop-in replacement for FingerprintCache when results should be reused
across runs. Live rows are loaded into memory on init; every write goes to
both tiers.

Usage:
    cache = SqliteFingerprintCache(db_path="~/.fact-flagger/cache.db")
    # Same API as FingerprintCache: get, put, prune, dump, clear
"""

from __future__ import annotations
import json
import sqlite3
from pathlib import Path
from typing import Any, Callable

from .cache import CACHE_TTL_MS, FingerprintCache
from .types import CacheEntry

_SCHEMA = """
CREATE TABLE IF NOT EXISTS classifications (
    key TEXT PRIMARY KEY,
    classification TEXT NOT NULL,
    stored_at_ms REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_classifications_stored
    ON classifications(stored_at_ms);
"""


class SqliteFingerprintCache(FingerprintCache):
    """Persistent fingerprint → classification store."""

    __slots__ = ("_db",)

    def __init__(
        self,
        *,
        db_path: str | Path = "cache.db",
        ttl_ms: float = CACHE_TTL_MS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(ttl_ms=ttl_ms, clock=clock)
        db_path = Path(db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path), check_same_thread=False)
        self._db.executescript(_SCHEMA)
        self._load()

    def _load(self) -> None:
        """Seed the memory table with rows that have not expired."""
        cutoff = self._clock() - self._ttl_ms
        rows = self._db.execute(
            "SELECT key, classification, stored_at_ms FROM classifications WHERE stored_at_ms > ?",
            (cutoff,),
        ).fetchall()
        for key, raw, stored_at in rows:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            self._entries[key] = CacheEntry(key=key, classification=data, stored_at_ms=stored_at)

    def put(self, key: str, classification: dict[str, Any]) -> CacheEntry:
        entry = super().put(key, classification)
        self._db.execute(
            "INSERT OR REPLACE INTO classifications (key, classification, stored_at_ms) VALUES (?, ?, ?)",
            (key, json.dumps(entry.classification, ensure_ascii=False), entry.stored_at_ms),
        )
        self._db.commit()
        return entry

    def prune(self) -> int:
        dropped = super().prune()
        self._db.execute(
            "DELETE FROM classifications WHERE stored_at_ms <= ?",
            (self._clock() - self._ttl_ms,),
        )
        self._db.commit()
        return dropped

    def clear(self) -> None:
        self._db.execute("DELETE FROM classifications")
        self._db.commit()
        super().clear()

    def close(self) -> None:
        self._db.close()
