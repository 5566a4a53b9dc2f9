"""SQLite implementation of the key-value store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional

from .repository import KeyValueStore


class SQLiteKeyValueStore(KeyValueStore):
    """Persist records in a single SQLite table with per-key expiry."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    @staticmethod
    def _deadline(ttl: Optional[float]) -> Optional[float]:
        return None if ttl is None else time.time() + ttl

    def _fetch(self, key: str) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(
            "SELECT value FROM kv_store WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, time.time()),
        )
        return cur.fetchone()

    def _upsert(self, key: str, raw: str, expires_at: Optional[float]) -> None:
        with self._write_lock:
            self._conn.execute(
                """
                INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, raw, expires_at),
            )
            self._conn.commit()

    def _increment(self, key: str, amount: int, ttl: Optional[float]) -> int:
        # IMMEDIATE takes the write lock before the read, so other processes
        # sharing the file cannot interleave between read and write.
        with self._write_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._fetch(key)
                new_value = (int(json.loads(row["value"])) if row else 0) + amount
                self._conn.execute(
                    """
                    INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                    """,
                    (key, json.dumps(new_value), self._deadline(ttl)),
                )
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
        return new_value

    def _execute(self, query: str, *params: Any) -> int:
        with self._write_lock:
            cur = self._conn.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Store API
    async def get(self, key: str) -> Any | None:
        row = await asyncio.to_thread(self._fetch, key)
        return json.loads(row["value"]) if row else None

    async def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await asyncio.to_thread(
            self._upsert, key, json.dumps(value), self._deadline(ttl)
        )

    async def increment(
        self, key: str, amount: int = 1, ttl: Optional[float] = None
    ) -> int:
        return await asyncio.to_thread(self._increment, key, amount, ttl)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._execute, "DELETE FROM kv_store WHERE key = ?", key)

    async def keys(self, prefix: str = "") -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
            _like_prefix(prefix),
            time.time(),
        )
        return [r["key"] for r in rows]

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
            time.time(),
        )

    def close(self) -> None:
        self._conn.close()


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"
