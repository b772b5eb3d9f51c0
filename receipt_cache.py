"""
Local receipt cache: a SQLite file holding named key/value partitions.

Partitions (one table each, key TEXT PRIMARY KEY, value_json TEXT):
  records     receipts keyed by their id
  aggregates  customer aggregates keyed by the JSON-encoded (customer, store) tuple
  metadata    {"key": ..., "value": ...} rows (watermark, refresh time)

The schema version lives in PRAGMA user_version. Opening an older file runs
the upgrade hook; files at the legacy version are wiped so stale data from the
old layout never mixes with the new one.
"""
import asyncio
import json
import logging
import sqlite3
import threading
from typing import Any, Callable, Dict, List, Optional

from sync_errors import NotInitialized, StoreError

log = logging.getLogger(__name__)

SCHEMA_VERSION = 2
LEGACY_VERSION = 1

PARTITION_KEYS = {
    "records": "id",
    "aggregates": "key",
    "metadata": "key",
}


def _encode_key(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), separators=(",", ":"))
    return str(value)


class CachePartition:
    """Async get/get_all/put/clear over one partition table."""

    def __init__(self, cache: "ReceiptCache", name: str, key_field: str):
        self._cache = cache
        self.name = name
        self.key_field = key_field

    def _key_of(self, value: Dict[str, Any]) -> str:
        if self.key_field not in value or value[self.key_field] is None:
            raise StoreError(f"{self.name}: value has no '{self.key_field}' key")
        return _encode_key(value[self.key_field])

    async def get(self, key: Any) -> Optional[Dict[str, Any]]:
        def _get(conn: sqlite3.Connection):
            row = conn.execute(f"SELECT value_json FROM {self.name} WHERE key=?", (_encode_key(key),)).fetchone()
            return json.loads(row["value_json"]) if row else None
        return await self._cache.run(_get)

    async def get_all(self) -> List[Dict[str, Any]]:
        def _get_all(conn: sqlite3.Connection):
            rows = conn.execute(f"SELECT value_json FROM {self.name} ORDER BY rowid").fetchall()
            return [json.loads(r["value_json"]) for r in rows]
        return await self._cache.run(_get_all)

    async def count(self) -> int:
        def _count(conn: sqlite3.Connection):
            row = conn.execute(f"SELECT COUNT(*) AS c FROM {self.name}").fetchone()
            return int(row["c"])
        return await self._cache.run(_count)

    async def put(self, value: Dict[str, Any]) -> None:
        await self.put_many([value])

    async def put_many(self, values: List[Dict[str, Any]]) -> int:
        rows = [(self._key_of(v), json.dumps(v, separators=(",", ":"), default=str)) for v in values]

        def _put(conn: sqlite3.Connection):
            conn.executemany(f"""
                INSERT INTO {self.name} (key, value_json) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json
            """, rows)
            return len(rows)
        return await self._cache.run(_put)

    async def replace_all(self, values: List[Dict[str, Any]]) -> int:
        """Clear the partition and write ``values`` in one transaction."""
        rows = [(self._key_of(v), json.dumps(v, separators=(",", ":"), default=str)) for v in values]

        def _replace(conn: sqlite3.Connection):
            conn.execute(f"DELETE FROM {self.name}")
            conn.executemany(f"INSERT OR REPLACE INTO {self.name} (key, value_json) VALUES (?, ?)", rows)
            return len(rows)
        return await self._cache.run(_replace)

    async def clear(self) -> None:
        def _clear(conn: sqlite3.Connection):
            conn.execute(f"DELETE FROM {self.name}")
        await self._cache.run(_clear)


class ReceiptCache:
    """Handle on the SQLite cache file. Call open() once, close() on shutdown."""

    def __init__(self, path: str, version: int = SCHEMA_VERSION):
        self.path = path
        self.version = version
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._partitions = {
            name: CachePartition(self, name, key_field)
            for name, key_field in PARTITION_KEYS.items()
        }

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> "ReceiptCache":
        if self._conn is not None:
            return self
        self._conn = await asyncio.to_thread(self._connect)
        return self

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            self._upgrade(conn)
            return conn
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open receipt cache {self.path}: {exc}") from exc

    def _upgrade(self, conn: sqlite3.Connection):
        old_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if old_version >= self.version:
            return
        log.info("Upgrading receipt cache from version %s to %s", old_version, self.version)
        for name in PARTITION_KEYS:
            conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {name} (
              key        TEXT PRIMARY KEY,
              value_json TEXT NOT NULL
            )
            """)
        if old_version == LEGACY_VERSION:
            log.info("Upgrading from version %s, clearing old data for consistency", LEGACY_VERSION)
            for name in PARTITION_KEYS:
                conn.execute(f"DELETE FROM {name}")
        conn.execute(f"PRAGMA user_version={int(self.version)}")
        conn.commit()

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            with self._lock:
                conn.close()

    async def __aenter__(self) -> "ReceiptCache":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def partition(self, name: str) -> CachePartition:
        if self._conn is None:
            raise NotInitialized("Receipt cache is not open; call open() first")
        return self._partitions[name]

    @property
    def records(self) -> CachePartition:
        return self.partition("records")

    @property
    def aggregates(self) -> CachePartition:
        return self.partition("aggregates")

    @property
    def metadata(self) -> CachePartition:
        return self.partition("metadata")

    async def run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``fn(conn)`` in a worker thread inside its own transaction."""
        if self._conn is None:
            raise NotInitialized("Receipt cache is not open; call open() first")
        return await asyncio.to_thread(self._run_locked, fn)

    def _run_locked(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise NotInitialized("Receipt cache was closed")
            try:
                result = fn(conn)
                conn.commit()
                return result
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc
