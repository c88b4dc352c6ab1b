"""Persistent key-value store backed by a single sqlite table.

Every record type lives in its own named collection. Each operation touches a
single key and is committed on its own; nothing here spans keys.
"""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Protocol, TypeVar

import structlog


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1


class StoreError(RuntimeError):
    """The store could not be opened or initialised."""


class StoredRecord(Protocol):
    COLLECTION: str

    def to_dict(self) -> dict[str, Any]: ...


T = TypeVar("T")


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing storage_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur != 0:
        raise StoreError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv (
          collection TEXT NOT NULL,
          key TEXT NOT NULL,
          value TEXT NOT NULL,
          updated_at_ts REAL NOT NULL,
          PRIMARY KEY (collection, key)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_kv_updated ON kv(collection, updated_at_ts);")
    conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))


class Store:
    """Typed get/insert/remove/scan over named collections."""

    def __init__(self, conn: sqlite3.Connection, path: str):
        self._conn = conn
        self.path = path

    @classmethod
    def open(cls, path: str) -> Store:
        try:
            conn = _connect(path)
            _ensure_schema_conn(conn)
        except (sqlite3.Error, OSError, ValueError) as exc:
            raise StoreError(f"Cannot open store at {path!r}: {exc}") from exc
        logger.info("Store opened", path=path)
        return cls(conn, path)

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            logger.warning("Store close failed", path=self.path, error=str(exc))

    def get(self, record_type: type[T], key: str) -> T | None:
        collection = record_type.COLLECTION  # type: ignore[attr-defined]
        try:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE collection=? AND key=?",
                (collection, key),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.error("Store get failed", collection=collection, key=key, error=str(exc))
            return None
        if row is None:
            return None
        return self._decode(record_type, collection, key, row["value"])

    def insert(self, key: str, record: StoredRecord) -> bool:
        collection = record.COLLECTION
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (collection, key, value, updated_at_ts) VALUES (?, ?, ?, ?)",
                (collection, key, _json_dumps(record.to_dict()), time.time()),
            )
        except sqlite3.Error as exc:
            logger.error("Store insert failed", collection=collection, key=key, error=str(exc))
            return False
        return True

    def remove(self, record_type: type, key: str) -> bool:
        """Delete one key. Returns True only if this call removed an existing row."""
        collection = record_type.COLLECTION  # type: ignore[attr-defined]
        try:
            cur = self._conn.execute("DELETE FROM kv WHERE collection=? AND key=?", (collection, key))
        except sqlite3.Error as exc:
            logger.error("Store remove failed", collection=collection, key=key, error=str(exc))
            return False
        return cur.rowcount > 0

    def scan(self, record_type: type[T]) -> list[tuple[str, T]]:
        collection = record_type.COLLECTION  # type: ignore[attr-defined]
        try:
            rows = self._conn.execute(
                "SELECT key, value FROM kv WHERE collection=? ORDER BY key",
                (collection,),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.error("Store scan failed", collection=collection, error=str(exc))
            return []
        out: list[tuple[str, T]] = []
        for row in rows:
            key = str(row["key"])
            record = self._decode(record_type, collection, key, row["value"])
            if record is not None:
                out.append((key, record))
        return out

    def all(self, record_type: type[T]) -> list[T]:
        return [record for _key, record in self.scan(record_type)]

    def prune(self, record_type: type, *, before_ts: float) -> int:
        collection = record_type.COLLECTION  # type: ignore[attr-defined]
        try:
            cur = self._conn.execute(
                "DELETE FROM kv WHERE collection=? AND updated_at_ts < ?",
                (collection, float(before_ts)),
            )
        except sqlite3.Error as exc:
            logger.error("Store prune failed", collection=collection, error=str(exc))
            return 0
        return max(0, cur.rowcount)

    def count(self, record_type: type) -> int:
        collection = record_type.COLLECTION  # type: ignore[attr-defined]
        try:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM kv WHERE collection=?", (collection,)).fetchone()
        except sqlite3.Error as exc:
            logger.error("Store count failed", collection=collection, error=str(exc))
            return 0
        return int(row["n"]) if row else 0

    @staticmethod
    def _decode(record_type: type[T], collection: str, key: str, raw: Any) -> T | None:
        try:
            data = json.loads(str(raw))
            return record_type.from_dict(data)  # type: ignore[attr-defined]
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Store record undecodable", collection=collection, key=key, error=str(exc))
            return None
