# -*- coding: utf-8 -*-
"""Storage backends for the record store.

A backend is a small keyed byte store split into named collections
(``records``, ``settings``) plus a metadata table. It knows nothing about
records or encryption; :class:`evidencekeeper.store.RecordStore` does.

The backend is chosen once at startup by :func:`select_backend`; the
decision is logged and never revisited per call.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
import logging
import os
import sqlite3

import aiosqlite

from .errors import SchemaError, StorageUnavailable

logger = logging.getLogger("evidencekeeper.backends")

SCHEMA_VERSION = 1

Row = Tuple[str, str, bytes]  # (key, sort_key, value)


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------

class StorageBackend:
    """Async keyed byte storage; every method may raise StorageUnavailable."""

    persistent = False
    name = "abstract"

    async def open(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def get_meta(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set_meta(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def load(self, collection: str) -> List[Tuple[str, bytes]]:
        """Return (key, value) pairs, highest sort key first, ties by key."""
        raise NotImplementedError

    async def fetch(self, collection: str, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def store(self, collection: str, key: str, value: bytes, sort_key: str = "") -> None:
        raise NotImplementedError

    async def remove(self, collection: str, key: str) -> None:
        raise NotImplementedError

    async def replace(self, collection: str, rows: Iterable[Row]) -> None:
        """Atomically swap the whole collection for *rows*.

        *rows* may be a lazy iterable; an exception raised while consuming
        it leaves the previous contents in place.
        """
        raise NotImplementedError


# ---------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------

class MemoryBackend(StorageBackend):
    """Process-local storage; data is lost on close."""

    name = "memory"

    def __init__(self) -> None:
        self._meta: Optional[Dict[str, str]] = None
        self._items: Dict[str, Dict[str, Tuple[str, bytes]]] = {}

    def _require_open(self) -> None:
        if self._meta is None:
            raise StorageUnavailable("Memory backend is not open")

    async def open(self) -> None:
        if self._meta is None:
            self._meta = {"schema_version": str(SCHEMA_VERSION)}

    async def close(self) -> None:
        self._meta = None
        self._items = {}

    async def get_meta(self, key: str) -> Optional[str]:
        self._require_open()
        return self._meta.get(key)

    async def set_meta(self, key: str, value: str) -> None:
        self._require_open()
        self._meta[key] = value

    async def load(self, collection: str) -> List[Tuple[str, bytes]]:
        self._require_open()
        items = sorted(self._items.get(collection, {}).items())
        items.sort(key=lambda kv: kv[1][0], reverse=True)
        return [(k, v) for k, (_, v) in items]

    async def fetch(self, collection: str, key: str) -> Optional[bytes]:
        self._require_open()
        item = self._items.get(collection, {}).get(key)
        return item[1] if item else None

    async def store(self, collection: str, key: str, value: bytes, sort_key: str = "") -> None:
        self._require_open()
        self._items.setdefault(collection, {})[key] = (sort_key, value)

    async def remove(self, collection: str, key: str) -> None:
        self._require_open()
        self._items.get(collection, {}).pop(key, None)

    async def replace(self, collection: str, rows: Iterable[Row]) -> None:
        self._require_open()
        staged: Dict[str, Tuple[str, bytes]] = {}
        for key, sort_key, value in rows:
            staged[key] = (sort_key, value)
        self._items[collection] = staged


# ---------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS meta (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS items (
    collection  TEXT NOT NULL,
    key         TEXT NOT NULL,
    sort_key    TEXT NOT NULL DEFAULT '',
    value       BLOB NOT NULL,
    PRIMARY KEY (collection, key)
);

CREATE INDEX IF NOT EXISTS idx_items_sort ON items(collection, sort_key);
"""

REQUIRED_COLUMNS = {
    "meta": ("key", "value"),
    "items": ("collection", "key", "sort_key", "value"),
}


async def _table_exists(db: aiosqlite.Connection, table: str) -> bool:
    cur = await db.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    )
    row = await cur.fetchone()
    await cur.close()
    return row is not None


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    """Return True if `column` is present in `table`."""
    cur = await db.execute(f"PRAGMA table_info({table})")
    rows = await cur.fetchall()
    await cur.close()
    # PRAGMA table_info columns: cid, name, type, notnull, default_value, pk
    return any(len(r) >= 2 and r[1] == column for r in rows)


class SqliteBackend(StorageBackend):
    """Single-file SQLite storage through aiosqlite."""

    persistent = True
    name = "sqlite"

    def __init__(self, path: str) -> None:
        self.path = path
        self._db: Optional[aiosqlite.Connection] = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageUnavailable("SQLite backend is not open")
        return self._db

    async def open(self) -> None:
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(self.path)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open database {self.path}") from exc
        try:
            await self._check_schema()
        except BaseException:
            await self._db.close()
            self._db = None
            raise

    async def _check_schema(self) -> None:
        db = self._db
        try:
            have_items = await _table_exists(db, "items")
            have_meta = await _table_exists(db, "meta")
            if not have_items and not have_meta:
                await db.executescript(SCHEMA_SQL)
                await db.execute(
                    "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                    (str(SCHEMA_VERSION),),
                )
                await db.commit()
                logger.info("Created store schema v%d at %s", SCHEMA_VERSION, self.path)
                return
            if not (have_items and have_meta):
                raise SchemaError("Store is missing required tables")
            for table, columns in REQUIRED_COLUMNS.items():
                for column in columns:
                    if not await _column_exists(db, table, column):
                        raise SchemaError(f"Store table {table} lacks column {column}")
            cur = await db.execute("SELECT value FROM meta WHERE key = 'schema_version'")
            row = await cur.fetchone()
            await cur.close()
        except sqlite3.OperationalError as exc:
            raise StorageUnavailable(f"Cannot read database {self.path}") from exc
        except sqlite3.DatabaseError as exc:
            raise SchemaError(f"{self.path} is not a readable store") from exc

        version = row[0] if row else None
        if version != str(SCHEMA_VERSION):
            raise SchemaError(
                f"Unsupported store schema version {version!r}; explicit migration required"
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def get_meta(self, key: str) -> Optional[str]:
        db = self._conn()
        try:
            cur = await db.execute("SELECT value FROM meta WHERE key = ?", (key,))
            row = await cur.fetchone()
            await cur.close()
        except sqlite3.Error as exc:
            raise StorageUnavailable("Failed to read store metadata") from exc
        return row[0] if row else None

    async def set_meta(self, key: str, value: str) -> None:
        db = self._conn()
        try:
            await db.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
            )
            await db.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailable("Failed to write store metadata") from exc

    async def load(self, collection: str) -> List[Tuple[str, bytes]]:
        db = self._conn()
        try:
            cur = await db.execute(
                """
                SELECT key, value
                  FROM items
                 WHERE collection = ?
                 ORDER BY sort_key DESC, key ASC
                """,
                (collection,),
            )
            rows = await cur.fetchall()
            await cur.close()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Failed to read {collection}") from exc
        return [(r[0], bytes(r[1])) for r in rows]

    async def fetch(self, collection: str, key: str) -> Optional[bytes]:
        db = self._conn()
        try:
            cur = await db.execute(
                "SELECT value FROM items WHERE collection = ? AND key = ?",
                (collection, key),
            )
            row = await cur.fetchone()
            await cur.close()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Failed to read {collection}") from exc
        return bytes(row[0]) if row else None

    async def store(self, collection: str, key: str, value: bytes, sort_key: str = "") -> None:
        db = self._conn()
        try:
            await db.execute(
                """
                INSERT OR REPLACE INTO items (collection, key, sort_key, value)
                VALUES (?, ?, ?, ?)
                """,
                (collection, key, sort_key, value),
            )
            await db.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Failed to write {collection}") from exc

    async def remove(self, collection: str, key: str) -> None:
        db = self._conn()
        try:
            await db.execute(
                "DELETE FROM items WHERE collection = ? AND key = ?", (collection, key)
            )
            await db.commit()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Failed to delete from {collection}") from exc

    async def replace(self, collection: str, rows: Iterable[Row]) -> None:
        db = self._conn()
        try:
            await db.execute("DELETE FROM items WHERE collection = ?", (collection,))
            for key, sort_key, value in rows:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO items (collection, key, sort_key, value)
                    VALUES (?, ?, ?, ?)
                    """,
                    (collection, key, sort_key, value),
                )
            await db.commit()
        except BaseException as exc:
            await db.rollback()
            if isinstance(exc, sqlite3.Error):
                raise StorageUnavailable(f"Failed to replace {collection}") from exc
            raise


# ---------------------------------------------------------------------
# Startup selection
# ---------------------------------------------------------------------

def _sqlite_path_usable(path: str) -> bool:
    if path == ":memory:":
        return True
    target = Path(path).expanduser()
    if target.exists():
        return target.is_file() and os.access(target, os.R_OK | os.W_OK)
    parent = target.parent if str(target.parent) else Path(".")
    return parent.is_dir() and os.access(parent, os.W_OK)


def select_backend(
    storage: str = "sqlite",
    db_path: str = "evidence_store.sqlite3",
    allow_memory_fallback: bool = False,
) -> StorageBackend:
    """Pick the storage strategy once, at startup, and log the decision."""
    if storage == "memory":
        logger.info("Using in-memory storage (configured); data will not persist")
        return MemoryBackend()
    if storage != "sqlite":
        raise ValueError(f"Unknown storage backend: {storage}")

    if _sqlite_path_usable(db_path):
        logger.info("Using SQLite storage at %s", db_path)
        return SqliteBackend(db_path)

    if allow_memory_fallback:
        logger.warning(
            "SQLite path %s is not usable; falling back to in-memory storage. "
            "Records will NOT persist across sessions.",
            db_path,
        )
        return MemoryBackend()
    raise StorageUnavailable(f"SQLite path {db_path} is not usable")
