"""
Caller-owned caches with explicit expiry.

Both caches store JSON-compatible values (``None`` marks a remembered miss) and expose the
same ``get``/``set`` surface so the geocoder can be handed either one:

* ``TTLCache``: in-process, bounded; least recently used entries are evicted once
  ``max_entries`` is reached, and entries older than their TTL are dropped on read.
* ``SQLiteCache``: durable across runs; expired rows are ignored on read and purged by
  ``purge_expired``.

Misses get their own (usually shorter) TTL so transient provider failures are retried.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: datetime


class TTLCache:
    def __init__(
        self,
        ttl: timedelta,
        max_entries: int = 1024,
        negative_ttl: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl = ttl
        self.negative_ttl = negative_ttl if negative_ttl is not None else ttl
        self.max_entries = max_entries
        self.clock = clock or _utcnow
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: datetime) -> bool:
        ttl = self.ttl if entry.value is not None else self.negative_ttl
        return now - entry.stored_at >= ttl

    def get(self, key: str) -> CacheEntry | None:
        now = self.clock()
        with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def set(self, key: str, value: Any) -> None:
        with self.lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self.clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                LOGGER.debug("Evicted cache entry %s", evicted)

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()


class SQLiteCache:
    """Durable key -> JSON cache, one table per cache namespace."""

    def __init__(
        self,
        db_path: Path,
        ttl: timedelta,
        negative_ttl: timedelta | None = None,
        table: str = "cache_entries",
        clock: Clock | None = None,
    ) -> None:
        if not table.isidentifier():
            raise ValueError(f"Invalid cache table name {table!r}")
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl
        self.negative_ttl = negative_ttl if negative_ttl is not None else ttl
        self.table = table
        self.clock = clock or _utcnow
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                key TEXT PRIMARY KEY,
                value TEXT,
                stored_at TEXT
            )
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def get(self, key: str) -> CacheEntry | None:
        with self.lock:
            cursor = self.conn.execute(f"SELECT value, stored_at FROM {self.table} WHERE key = ?", (key,))
            row = cursor.fetchone()
        if not row:
            return None
        value: Any = None
        if row[0] is not None:
            try:
                value = json.loads(row[0])
            except json.JSONDecodeError:
                LOGGER.warning("Discarding corrupt cache row for %s", key)
                return None
        try:
            stored_at = datetime.fromisoformat(row[1])
        except (TypeError, ValueError):
            return None
        if stored_at.tzinfo is None:
            stored_at = stored_at.replace(tzinfo=timezone.utc)
        ttl = self.ttl if value is not None else self.negative_ttl
        if self.clock() - stored_at >= ttl:
            return None
        return CacheEntry(value=value, stored_at=stored_at)

    def set(self, key: str, value: Any) -> None:
        blob = json.dumps(value, ensure_ascii=False) if value is not None else None
        with self.lock:
            self.conn.execute(
                f"INSERT OR REPLACE INTO {self.table} (key, value, stored_at) VALUES (?, ?, ?)",
                (key, blob, self.clock().isoformat()),
            )
            self.conn.commit()

    def purge_expired(self) -> int:
        """Delete rows past their TTL; returns the number removed."""
        now = self.clock()
        hit_cutoff = (now - self.ttl).isoformat()
        miss_cutoff = (now - self.negative_ttl).isoformat()
        with self.lock:
            cursor = self.conn.execute(
                f"""
                DELETE FROM {self.table}
                WHERE (value IS NOT NULL AND stored_at <= ?) OR (value IS NULL AND stored_at <= ?)
                """,
                (hit_cutoff, miss_cutoff),
            )
            self.conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        with self.lock:
            self.conn.close()
