import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Optional

import aiosqlite

from .store import EXPIRY_INDEX, SCHEMA, SQLiteObjectStore


@asynccontextmanager
async def sqlite_object_store(
    db_path: str,
    *,
    cache_size_kib: int = -16384,
    pool_size: int = 4,
    lifecycle: Optional[Dict[str, timedelta]] = None,
    page_size: int = 1000,
    clock: Optional[Callable[[], datetime]] = None,
) -> AsyncIterator[SQLiteObjectStore]:
    """
    Opens a SQLite-backed object store and owns its connections for the
    lifetime of the context.

    A file database gets one write connection plus `pool_size` read-only
    connections in WAL mode. An in-memory database (`":memory:"`) is private
    to one connection, so that connection serves both reads and writes.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    is_memory_db = db_path == ":memory:"

    # Autocommit: every statement the store issues is its own transaction.
    write_conn = await aiosqlite.connect(db_path, isolation_level=None)
    connections = [write_conn]
    try:
        if not is_memory_db:
            await write_conn.execute("PRAGMA journal_mode=WAL;")
            await write_conn.execute("PRAGMA synchronous = NORMAL;")
        await write_conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
        await write_conn.execute("PRAGMA busy_timeout = 5000;")
        await write_conn.execute(SCHEMA)
        await write_conn.execute(EXPIRY_INDEX)

        read_pool: asyncio.Queue = asyncio.Queue()
        if is_memory_db:
            await read_pool.put(write_conn)
        else:
            for _ in range(pool_size):
                conn = await aiosqlite.connect(
                    f"file:{db_path}?mode=ro", uri=True, isolation_level=None
                )
                await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
                await conn.execute("PRAGMA busy_timeout = 5000;")
                connections.append(conn)
                await read_pool.put(conn)

        store = SQLiteObjectStore(
            write_conn,
            asyncio.Lock(),
            read_pool,
            lifecycle=lifecycle,
            page_size=page_size,
            clock=clock,
        )
        logging.info(f"Object store opened on {db_path} ({len(connections)} connections)")
        yield store
    finally:
        await asyncio.gather(*(conn.close() for conn in connections))
        logging.info(f"Object store on {db_path} closed")
