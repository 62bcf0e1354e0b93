from __future__ import annotations

import json
import os
import time
from typing import Any

import aiosqlite

from token_throttle.bucket import BucketSnapshot


class SQLiteTokenTable:
    """Asynchronous token table keeping JSON snapshots in SQLite."""

    is_async = True

    def __init__(self, db_path: str, *, max_keys: int | None = None) -> None:
        self._db_path = db_path
        self._max_keys = int(max_keys) if max_keys else None
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        dir_name = os.path.dirname(self._db_path)
        if dir_name:
            os.makedirs(dir_name, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute("PRAGMA synchronous=NORMAL;")
        await self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS token_buckets (
              key TEXT PRIMARY KEY,
              snapshot TEXT NOT NULL,
              updated_at INTEGER NOT NULL
            );
            """
        )
        await self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_token_buckets_updated_at
            ON token_buckets (updated_at);
            """
        )
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def get(self, key: str) -> BucketSnapshot | None:
        async with self.conn.execute(
            "SELECT snapshot FROM token_buckets WHERE key = ?",
            (key,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        obj: Any = json.loads(row[0])
        if not isinstance(obj, dict):
            return None
        return obj

    async def put(self, key: str, snapshot: BucketSnapshot) -> None:
        now = time.time_ns()
        await self.conn.execute(
            """
            INSERT INTO token_buckets (key, snapshot, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET snapshot=excluded.snapshot, updated_at=excluded.updated_at
            """,
            (key, json.dumps(snapshot, separators=(",", ":")), now),
        )
        if self._max_keys is not None:
            await self._trim()
        await self.conn.commit()

    async def _trim(self) -> None:
        # Hard cap: drop the least recently written rows beyond max_keys.
        async with self.conn.execute("SELECT COUNT(*) FROM token_buckets") as cursor:
            row = await cursor.fetchone()
        count = int(row[0]) if row and row[0] is not None else 0
        if self._max_keys is None or count <= self._max_keys:
            return
        await self.conn.execute(
            """
            DELETE FROM token_buckets
            WHERE rowid IN (
              SELECT rowid FROM token_buckets
              ORDER BY updated_at ASC, rowid ASC
              LIMIT ?
            )
            """,
            (count - self._max_keys,),
        )

    async def count(self) -> int:
        async with self.conn.execute("SELECT COUNT(*) FROM token_buckets") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
