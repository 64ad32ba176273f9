"""
adcache/services/store.py – persisted cache entries with TTL and access bookkeeping.

Two backends share one contract:

• InMemoryCacheStore – a dict behind a lock; the default for tests and single
  process deployments.
• SQLiteCacheStore   – one row per key, written with a single
  INSERT … ON CONFLICT statement so a record is always one complete write.

Payloads are stored serialised and decoded on every read, so callers never share
mutable state with the store. Expiry is enforced by the reader (see
services/staleness.py); expired rows stay until `remove_expired` reaps them.
"""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from adcache.errors import EntryNotFound, InvalidArgument, StorageUnavailable
from adcache.models import CacheEntry, CacheEntrySummary, CacheStats

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def _serialize(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"payload is not JSON-serialisable: {exc}") from exc


def _checksum(serialized: str) -> str:
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]


def _ttl_ms(ttl: float) -> int:
    if ttl < 0:
        raise InvalidArgument("ttl must be >= 0")
    return int(ttl * 1000)


# ── Contract ──────────────────────────────────────────────────────────────────


class CacheStore(ABC):
    """Keyed JSON blobs with expiry, access counts, size and checksum."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry at *key* (expired or not), or None. No side effects."""

    @abstractmethod
    def upsert(
        self,
        key: str,
        scope: str,
        range_descriptor: str,
        payload: Any,
        ttl: float,
    ) -> CacheEntry:
        """Insert or update-in-place; *ttl* is in seconds from now."""

    @abstractmethod
    def touch(self, key: str) -> None:
        """Bump last_accessed_at and access_count. A missing key is a no-op."""

    @abstractmethod
    def list_entries(
        self, scope: Optional[str] = None, include_expired: bool = False
    ) -> list[CacheEntrySummary]: ...

    @abstractmethod
    def extend_expiry(self, key: str, extra: float) -> CacheEntrySummary:
        """Push expires_at to ``max(expires_at, now) + extra`` seconds."""

    @abstractmethod
    def remove(self, key: str) -> bool: ...

    @abstractmethod
    def remove_expired(self, scope: Optional[str] = None) -> int: ...

    @abstractmethod
    def remove_by_scope(self, scope: str) -> int: ...

    @abstractmethod
    def ping(self) -> None:
        """Raise StorageUnavailable if the backend cannot be reached."""

    def close(self) -> None:
        pass

    # ── Derived helpers ───────────────────────────────────────────────────────

    def list_by_scope(self, scope: str, include_expired: bool = False) -> list[CacheEntrySummary]:
        return self.list_entries(scope=scope, include_expired=include_expired)

    def stats(self, scope: Optional[str] = None) -> CacheStats:
        entries = self.list_entries(scope=scope)
        if not entries:
            return CacheStats(scope=scope)
        return CacheStats(
            scope=scope,
            total_entries=len(entries),
            total_size_bytes=sum(e.size_bytes for e in entries),
            avg_access_count=round(sum(e.access_count for e in entries) / len(entries), 2),
            oldest_created_at=min(e.created_at for e in entries),
            newest_created_at=max(e.created_at for e in entries),
        )


# ── In-memory backend ─────────────────────────────────────────────────────────


class InMemoryCacheStore(CacheStore):
    def __init__(self, clock: Clock = now_ms) -> None:
        super().__init__(clock)
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[CacheEntrySummary, str]] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            record = self._entries.get(key)
        if record is None:
            return None
        summary, serialized = record
        return CacheEntry(**summary.model_dump(), payload=json.loads(serialized))

    def upsert(self, key, scope, range_descriptor, payload, ttl) -> CacheEntry:
        serialized = _serialize(payload)
        ttl_ms = _ttl_ms(ttl)
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None:
                created_at = existing[0].created_at
                now = max(now, created_at)
                access_count = existing[0].access_count + 1
            else:
                created_at = now
                access_count = 1
            summary = CacheEntrySummary(
                key=key,
                scope=scope,
                range_descriptor=range_descriptor,
                created_at=created_at,
                updated_at=now,
                last_accessed_at=now,
                expires_at=now + ttl_ms,
                access_count=access_count,
                size_bytes=len(serialized.encode("utf-8")),
                checksum=_checksum(serialized),
            )
            self._entries[key] = (summary, serialized)
        return CacheEntry(**summary.model_dump(), payload=json.loads(serialized))

    def touch(self, key: str) -> None:
        with self._lock:
            record = self._entries.get(key)
            if record is None:
                return
            summary, serialized = record
            updated = summary.model_copy(
                update={
                    "last_accessed_at": max(self._clock(), summary.created_at),
                    "access_count": summary.access_count + 1,
                }
            )
            self._entries[key] = (updated, serialized)

    def list_entries(self, scope=None, include_expired=False) -> list[CacheEntrySummary]:
        now = self._clock()
        with self._lock:
            summaries = [s for s, _ in self._entries.values()]
        return [
            s
            for s in summaries
            if (scope is None or s.scope == scope) and (include_expired or s.expires_at > now)
        ]

    def extend_expiry(self, key: str, extra: float) -> CacheEntrySummary:
        extra_ms = _ttl_ms(extra)
        with self._lock:
            record = self._entries.get(key)
            if record is None:
                raise EntryNotFound(f"cache entry {key!r} not found")
            summary, serialized = record
            now = self._clock()
            updated = summary.model_copy(
                update={
                    "expires_at": max(summary.expires_at, now) + extra_ms,
                    "updated_at": max(now, summary.created_at),
                }
            )
            self._entries[key] = (updated, serialized)
        return updated

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def remove_expired(self, scope: Optional[str] = None) -> int:
        now = self._clock()
        with self._lock:
            doomed = [
                k
                for k, (s, _) in self._entries.items()
                if s.expires_at <= now and (scope is None or s.scope == scope)
            ]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def remove_by_scope(self, scope: str) -> int:
        with self._lock:
            doomed = [k for k, (s, _) in self._entries.items() if s.scope == scope]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def ping(self) -> None:
        pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ── SQLite backend ────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries(
    key TEXT PRIMARY KEY,
    scope TEXT NOT NULL,
    range_descriptor TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    last_accessed_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    access_count INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL,
    checksum TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cache_entries_scope ON cache_entries(scope);
CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at ON cache_entries(expires_at);
"""

_UPSERT = """
INSERT INTO cache_entries(
    key, scope, range_descriptor, payload, created_at, updated_at,
    last_accessed_at, expires_at, access_count, size_bytes, checksum
)
VALUES (
    :key, :scope, :range_descriptor, :payload, :now, :now,
    :now, :expires_at, 1, :size_bytes, :checksum
)
ON CONFLICT(key) DO UPDATE SET
  scope=excluded.scope,
  range_descriptor=excluded.range_descriptor,
  payload=excluded.payload,
  updated_at=MAX(excluded.updated_at, cache_entries.created_at),
  last_accessed_at=MAX(excluded.last_accessed_at, cache_entries.created_at),
  expires_at=MAX(excluded.expires_at, cache_entries.created_at),
  access_count=cache_entries.access_count + 1,
  size_bytes=excluded.size_bytes,
  checksum=excluded.checksum
"""

_SUMMARY_COLUMNS = (
    "key, scope, range_descriptor, created_at, updated_at, last_accessed_at, "
    "expires_at, access_count, size_bytes, checksum"
)


class SQLiteCacheStore(CacheStore):
    def __init__(self, db_path: Path | str = ":memory:", clock: Clock = now_ms) -> None:
        super().__init__(clock)
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"cannot open cache database {self._db_path}: {exc}", cause=exc) from exc
        logger.info("SQLite cache store opened", extra={"db_path": self._db_path})

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._lock, self._conn:
                yield self._conn
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"cache database error: {exc}", cause=exc) from exc

    @staticmethod
    def _summary(row: sqlite3.Row) -> CacheEntrySummary:
        return CacheEntrySummary(**{k: row[k] for k in row.keys() if k != "payload"})

    def _entry(self, row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(**self._summary(row).model_dump(), payload=json.loads(row["payload"]))

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM cache_entries WHERE key=?", (key,)).fetchone()
        return self._entry(row) if row else None

    def upsert(self, key, scope, range_descriptor, payload, ttl) -> CacheEntry:
        serialized = _serialize(payload)
        ttl_ms = _ttl_ms(ttl)
        with self._transaction() as conn:
            now = self._clock()
            conn.execute(
                _UPSERT,
                {
                    "key": key,
                    "scope": scope,
                    "range_descriptor": range_descriptor,
                    "payload": serialized,
                    "now": now,
                    "expires_at": now + ttl_ms,
                    "size_bytes": len(serialized.encode("utf-8")),
                    "checksum": _checksum(serialized),
                },
            )
            row = conn.execute("SELECT * FROM cache_entries WHERE key=?", (key,)).fetchone()
        return self._entry(row)

    def touch(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE cache_entries
                SET last_accessed_at=MAX(?, created_at), access_count=access_count + 1
                WHERE key=?
                """,
                (self._clock(), key),
            )

    def list_entries(self, scope=None, include_expired=False) -> list[CacheEntrySummary]:
        clauses: list[str] = []
        params: list[Any] = []
        if scope is not None:
            clauses.append("scope=?")
            params.append(scope)
        if not include_expired:
            clauses.append("expires_at>?")
            params.append(self._clock())
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM cache_entries{where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._summary(r) for r in rows]

    def extend_expiry(self, key: str, extra: float) -> CacheEntrySummary:
        extra_ms = _ttl_ms(extra)
        with self._transaction() as conn:
            now = self._clock()
            cur = conn.execute(
                """
                UPDATE cache_entries
                SET expires_at=MAX(expires_at, :now) + :extra, updated_at=MAX(:now, created_at)
                WHERE key=:key
                """,
                {"now": now, "extra": extra_ms, "key": key},
            )
            if cur.rowcount == 0:
                raise EntryNotFound(f"cache entry {key!r} not found")
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM cache_entries WHERE key=?", (key,)
            ).fetchone()
        return self._summary(row)

    def remove(self, key: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM cache_entries WHERE key=?", (key,))
        return cur.rowcount > 0

    def remove_expired(self, scope: Optional[str] = None) -> int:
        now = self._clock()
        with self._transaction() as conn:
            if scope is None:
                cur = conn.execute("DELETE FROM cache_entries WHERE expires_at<=?", (now,))
            else:
                cur = conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at<=? AND scope=?", (now, scope)
                )
        return cur.rowcount

    def remove_by_scope(self, scope: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM cache_entries WHERE scope=?", (scope,))
        return cur.rowcount

    def ping(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
