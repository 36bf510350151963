"""
Bounded key/value cache using SQLite.

Holds namespaced JSON values under a hard capacity, measured in
characters like a browser storage quota. A write that does not fit
triggers exactly one sweep and one retry; if the retry still does not
fit the write is dropped and the caller gets False. The cache is
best-effort: nothing in it is the sole copy of data obtainable from
the record source.

Namespaces used by the engine:
- revisions: resolved current record per logical key
- metadata: coalesced external lookups per lookup key
- annotations: ordered annotation list per document id

Sweeps evict the least-recently-written entries across all namespaces.
Entries written inside the protection window survive a sweep unless a
pending write cannot fit after evicting every older entry.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import CapacityExceeded
from .types import CacheEntry

logger = logging.getLogger(__name__)

# Roughly a browser's per-origin storage quota
DEFAULT_CAPACITY = 5_000_000

# Entries younger than this are protected from sweeps
DEFAULT_PROTECTION_SECONDS = 300.0

# A standalone sweep frees space down to this fraction of capacity
DEFAULT_LOW_WATER = 0.8


def entry_size(namespace: str, key: str, value_json: str) -> int:
    """Characters charged against capacity for one entry."""
    return len(namespace) + len(key) + len(value_json)


class BoundedStore:
    """
    SQLite-backed namespaced cache with capacity and oldest-first sweep.

    Writes are last-write-wins per key; there is no multi-key
    transaction, so callers updating several keys must tolerate
    partial application.
    """

    def __init__(
        self,
        store_path: Optional[Path] = None,
        *,
        capacity: int = DEFAULT_CAPACITY,
        protection_seconds: float = DEFAULT_PROTECTION_SECONDS,
        low_water: float = DEFAULT_LOW_WATER,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store_path: Path to SQLite database file (None for in-memory)
            capacity: Maximum total characters across all entries
            protection_seconds: Age below which sweeps prefer not to evict
            low_water: Target fill fraction for a standalone sweep
            clock: Source of the current time in epoch seconds
        """
        self._conn: Optional[sqlite3.Connection] = None
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if not 0.0 <= low_water <= 1.0:
            raise ValueError(f"low_water must be between 0 and 1, got {low_water}")
        self._db_path = store_path
        self._capacity = capacity
        self._protection_seconds = protection_seconds
        self._low_water = low_water
        self._clock = clock
        self._lock = threading.Lock()
        self._dropped_writes = 0
        self._streaks: dict[str, int] = {}
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        if self._db_path is None:
            target = ":memory:"
        else:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self._db_path)
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        if self._db_path is not None:
            # Enable WAL mode for better concurrent access across processes
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                size INTEGER NOT NULL,
                written_at REAL NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)

        # Index for oldest-first sweeps
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_written
            ON cache_entries(written_at)
        """)

        self._conn.commit()

    @property
    def capacity(self) -> int:
        return self._capacity

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set(self, namespace: str, key: str, value: Any) -> bool:
        """
        Store a JSON-serializable value.

        A write that exceeds capacity triggers one sweep and one retry.

        Args:
            namespace: Cache namespace
            key: Key within the namespace
            value: JSON-serializable value

        Returns:
            True if stored, False if dropped for lack of capacity
        """
        value_json = json.dumps(value, ensure_ascii=False)
        size = entry_size(namespace, key, value_json)

        with self._lock:
            if size > self._capacity:
                logger.warning(
                    "Dropped write %s/%s: %d chars exceeds capacity %d",
                    namespace, key, size, self._capacity,
                )
                self._record_drop(namespace)
                return False

            try:
                self._write(namespace, key, value_json, size)
                self._streaks[namespace] = 0
                return True
            except CapacityExceeded as e:
                logger.info("Capacity reached writing %s/%s, sweeping", namespace, key)
                self._sweep(e.required)

            try:
                self._write(namespace, key, value_json, size)
            except CapacityExceeded:
                logger.warning(
                    "Dropped write %s/%s after sweep (%d chars)", namespace, key, size,
                )
                self._record_drop(namespace)
                return False
            self._streaks[namespace] = 0
            return True

    def _write(self, namespace: str, key: str, value_json: str, size: int) -> None:
        """Write one entry or raise CapacityExceeded."""
        row = self._conn.execute("""
            SELECT size FROM cache_entries
            WHERE namespace = ? AND key = ?
        """, (namespace, key)).fetchone()
        replaced = row["size"] if row is not None else 0

        used = self._used()
        if used - replaced + size > self._capacity:
            raise CapacityExceeded(
                f"{namespace}/{key} needs {size} chars, {self._capacity - used} free",
                required=size - replaced,
            )

        self._conn.execute("""
            INSERT OR REPLACE INTO cache_entries
            (namespace, key, value_json, size, written_at)
            VALUES (?, ?, ?, ?, ?)
        """, (namespace, key, value_json, size, self._clock()))
        self._conn.commit()

    def _record_drop(self, namespace: str) -> None:
        self._dropped_writes += 1
        self._streaks[namespace] = self._streaks.get(namespace, 0) + 1

    def delete(self, namespace: str, key: str) -> bool:
        """
        Delete one entry.

        Returns:
            True if the entry existed and was deleted
        """
        with self._lock:
            cursor = self._conn.execute("""
                DELETE FROM cache_entries
                WHERE namespace = ? AND key = ?
            """, (namespace, key))
            self._conn.commit()
        return cursor.rowcount > 0

    def clear(self, namespace: Optional[str] = None) -> int:
        """
        Delete every entry, or every entry in one namespace.

        Returns:
            Number of entries deleted
        """
        with self._lock:
            if namespace is None:
                cursor = self._conn.execute("DELETE FROM cache_entries")
            else:
                cursor = self._conn.execute("""
                    DELETE FROM cache_entries WHERE namespace = ?
                """, (namespace,))
            self._conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def sweep(self, required: int = 0) -> int:
        """
        Free space by evicting the oldest-written entries.

        Args:
            required: Characters that must fit after the sweep. When 0,
                sweeps down to the low-water mark instead, evicting only
                entries older than the protection window.

        Returns:
            Number of entries evicted
        """
        with self._lock:
            return self._sweep(required)

    def _sweep(self, required: int) -> int:
        if required > 0:
            target = self._capacity - required
        else:
            target = int(self._capacity * self._low_water)
        used = self._used()
        if used <= target:
            return 0

        cutoff = self._clock() - self._protection_seconds
        rows = self._conn.execute("""
            SELECT namespace, key, size, written_at FROM cache_entries
            ORDER BY written_at ASC, rowid ASC
        """).fetchall()

        # Unprotected entries first; protected ones only to fit a pending write
        unprotected = [r for r in rows if r["written_at"] <= cutoff]
        candidates = list(unprotected)
        if required > 0:
            candidates += [r for r in rows if r["written_at"] > cutoff]

        victims = []
        for row in candidates:
            if used <= target:
                break
            victims.append((row["namespace"], row["key"]))
            used -= row["size"]

        if len(victims) > len(unprotected):
            logger.warning(
                "Sweep evicted %d entries inside the protection window",
                len(victims) - len(unprotected),
            )

        self._conn.executemany("""
            DELETE FROM cache_entries
            WHERE namespace = ? AND key = ?
        """, victims)
        self._conn.commit()

        logger.info("Sweep evicted %d entries, %d chars in use", len(victims), used)
        return len(victims)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, namespace: str, key: str) -> Optional[Any]:
        """
        Get a value.

        Returns:
            The stored value, or None if absent or undecodable
        """
        row = self._conn.execute("""
            SELECT value_json FROM cache_entries
            WHERE namespace = ? AND key = ?
        """, (namespace, key)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry %s/%s", namespace, key)
            self.delete(namespace, key)
            return None

    def get_entry(self, namespace: str, key: str) -> Optional[CacheEntry]:
        """Get a value together with its write time."""
        row = self._conn.execute("""
            SELECT value_json, written_at FROM cache_entries
            WHERE namespace = ? AND key = ?
        """, (namespace, key)).fetchone()
        if row is None:
            return None
        try:
            value = json.loads(row["value_json"])
        except json.JSONDecodeError:
            return None
        return CacheEntry(namespace, key, value, row["written_at"])

    def keys(self, namespace: str) -> list[str]:
        """List keys in a namespace, most recently written first."""
        cursor = self._conn.execute("""
            SELECT key FROM cache_entries
            WHERE namespace = ?
            ORDER BY written_at DESC
        """, (namespace,))
        return [row["key"] for row in cursor]

    def entries(self, namespace: str) -> list[CacheEntry]:
        """All decodable entries in a namespace, oldest first."""
        cursor = self._conn.execute("""
            SELECT key, value_json, written_at FROM cache_entries
            WHERE namespace = ?
            ORDER BY written_at ASC
        """, (namespace,))
        results = []
        for row in cursor:
            try:
                value = json.loads(row["value_json"])
            except json.JSONDecodeError:
                continue
            results.append(CacheEntry(namespace, row["key"], value, row["written_at"]))
        return results

    def exists(self, namespace: str, key: str) -> bool:
        """Check if an entry exists."""
        cursor = self._conn.execute("""
            SELECT 1 FROM cache_entries
            WHERE namespace = ? AND key = ?
        """, (namespace, key))
        return cursor.fetchone() is not None

    def _used(self) -> int:
        return self._conn.execute(
            "SELECT COALESCE(SUM(size), 0) FROM cache_entries"
        ).fetchone()[0]

    def used(self) -> int:
        """Characters currently charged against capacity."""
        return self._used()

    def failure_streak(self, namespace: str) -> int:
        """Consecutive dropped writes in a namespace since the last success."""
        return self._streaks.get(namespace, 0)

    def stats(self) -> dict[str, Any]:
        """Usage summary for display."""
        cursor = self._conn.execute("""
            SELECT namespace, COUNT(*) AS n FROM cache_entries
            GROUP BY namespace ORDER BY namespace
        """)
        return {
            "capacity": self._capacity,
            "used": self._used(),
            "namespaces": {row["namespace"]: row["n"] for row in cursor},
            "dropped_writes": self._dropped_writes,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
