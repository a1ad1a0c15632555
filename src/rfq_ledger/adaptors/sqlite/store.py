"""
This module provides the SQLite implementation of the `ObjectStore` protocol.

All objects live in one `objects` table keyed by the object key. Every write
is a single autocommitted statement, so each `put` is atomic on its own and
the conditional variants map directly onto SQL:

- `IfAbsent`  -> plain `INSERT` (primary-key violation means the key exists)
- `IfMatch`   -> `UPDATE ... WHERE etag = ?` (zero rows means the etag moved)
- no precondition -> upsert

Etags are MD5 digests of the body, as with S3 single-part uploads, so
rewriting identical bytes leaves the etag unchanged.
"""
import asyncio
import hashlib
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Optional

import aiosqlite

from ...errors import ObjectNotFound, PreconditionFailed, StorageFatal, StorageTransient
from ...protocols import IfAbsent, IfMatch, ObjectStore, Precondition, StoredObject
from ...store import validate_key

SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    key TEXT PRIMARY KEY,
    body BLOB NOT NULL,
    etag TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at TEXT
)
"""
EXPIRY_INDEX = """
CREATE INDEX IF NOT EXISTS idx_objects_expires_at
ON objects (expires_at) WHERE expires_at IS NOT NULL
"""

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _fmt(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def compute_etag(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


@asynccontextmanager
async def _translate_errors(operation: str, key: str):
    try:
        yield
    except sqlite3.OperationalError as e:
        message = str(e).lower()
        if "locked" in message or "busy" in message:
            raise StorageTransient(f"{operation} {key!r}: {e}") from e
        raise StorageFatal(f"{operation} {key!r}: {e}") from e
    except sqlite3.DatabaseError as e:
        raise StorageFatal(f"{operation} {key!r}: {e}") from e


class SQLiteObjectStore(ObjectStore):
    """
    A keyed blob store on SQLite, using a dedicated write connection (guarded
    by a lock) and a pool of read connections.

    `lifecycle` maps key prefixes to a retention period. Objects under such a
    prefix expire that long after their last write: they read as absent, an
    `IfAbsent` write succeeds over them, and `sweep_expired` removes them.
    """

    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: asyncio.Queue,
        *,
        lifecycle: Optional[Dict[str, timedelta]] = None,
        page_size: int = 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.write_conn = write_conn
        self.write_lock = write_lock
        self.read_pool = read_pool
        self.lifecycle = dict(lifecycle or {})
        self.page_size = page_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @asynccontextmanager
    async def _read_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self.read_pool.get()
        try:
            yield conn
        finally:
            await self.read_pool.put(conn)

    def _expiry_for(self, key: str, now: datetime) -> Optional[str]:
        matches = [prefix for prefix in self.lifecycle if key.startswith(prefix)]
        if not matches:
            return None
        retention = self.lifecycle[max(matches, key=len)]
        return _fmt(now + retention)

    async def get(self, key: str) -> StoredObject:
        validate_key(key)
        now = _fmt(self.clock())
        async with _translate_errors("get", key), self._read_conn() as conn:
            async with conn.execute(
                "SELECT body, etag, expires_at FROM objects WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise ObjectNotFound(key)
        body, etag, expires_at = row
        if expires_at is not None and expires_at <= now:
            raise ObjectNotFound(key)
        return StoredObject(key=key, body=bytes(body), etag=etag)

    async def put(
        self, key: str, body: bytes, precondition: Optional[Precondition] = None
    ) -> str:
        validate_key(key)
        now_dt = self.clock()
        now = _fmt(now_dt)
        etag = compute_etag(body)
        expires_at = self._expiry_for(key, now_dt)
        params = (key, body, etag, now, expires_at)

        async with _translate_errors("put", key), self.write_lock:
            if precondition is None:
                await self.write_conn.execute(
                    """
                    INSERT INTO objects (key, body, etag, updated_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (key) DO UPDATE SET
                        body = excluded.body,
                        etag = excluded.etag,
                        updated_at = excluded.updated_at,
                        expires_at = excluded.expires_at
                    """,
                    params,
                )
            elif isinstance(precondition, IfAbsent):
                # An expired object counts as absent.
                await self.write_conn.execute(
                    "DELETE FROM objects WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                    (key, now),
                )
                try:
                    await self.write_conn.execute(
                        "INSERT INTO objects (key, body, etag, updated_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                        params,
                    )
                except sqlite3.IntegrityError:
                    raise PreconditionFailed(key, "object already exists")
            elif isinstance(precondition, IfMatch):
                cursor = await self.write_conn.execute(
                    """
                    UPDATE objects SET body = ?, etag = ?, updated_at = ?, expires_at = ?
                    WHERE key = ? AND etag = ? AND (expires_at IS NULL OR expires_at > ?)
                    """,
                    (body, etag, now, expires_at, key, precondition.etag, now),
                )
                updated = cursor.rowcount
                await cursor.close()
                if updated == 0:
                    raise PreconditionFailed(key, f"etag is no longer {precondition.etag}")
            else:
                raise StorageFatal(f"Unsupported precondition: {precondition!r}")
        return etag

    async def list(self, prefix: str, start_after: Optional[str] = None) -> AsyncIterator[str]:
        """
        Yields keys under `prefix` one page at a time. The read connection is
        only held while a page is fetched. Restart by passing the last key
        seen as `start_after`.
        """
        cursor_key = start_after or ""
        while True:
            now = _fmt(self.clock())
            async with _translate_errors("list", prefix), self._read_conn() as conn:
                async with conn.execute(
                    """
                    SELECT key FROM objects
                    WHERE substr(key, 1, ?) = ? AND key > ?
                      AND (expires_at IS NULL OR expires_at > ?)
                    ORDER BY key LIMIT ?
                    """,
                    (len(prefix), prefix, cursor_key, now, self.page_size),
                ) as cursor:
                    page = [row[0] for row in await cursor.fetchall()]
            for key in page:
                yield key
            if len(page) < self.page_size:
                return
            cursor_key = page[-1]

    async def delete(self, key: str) -> None:
        validate_key(key)
        async with _translate_errors("delete", key), self.write_lock:
            await self.write_conn.execute("DELETE FROM objects WHERE key = ?", (key,))

    async def sweep_expired(self) -> int:
        """Physically removes expired objects. Returns how many were removed."""
        now = _fmt(self.clock())
        async with _translate_errors("sweep", "*"), self.write_lock:
            cursor = await self.write_conn.execute(
                "DELETE FROM objects WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            removed = cursor.rowcount
            await cursor.close()
        if removed:
            logging.info(f"Swept {removed} expired objects")
        return removed
