# manages connection to db, transaction boundaries and retries for the db package
import asyncio
import os.path
import sqlite3
from contextlib import asynccontextmanager
from sqlite3 import Row
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import aiosqlite

from fulfillment.engine.errors import StorageUnavailable
from fulfillment.utils.config import get_settings
from fulfillment.utils.logger import get_logger

_logger = get_logger(__name__)

T = TypeVar("T")

DB_PATH = os.getenv("FULFILLMENT_DB_PATH", "data/fulfillment.sqlite")
DB_INIT_SCRIPTS = [
    os.path.join(os.path.dirname(__file__), "schema.sql"),
]

_initialized = False
_init_lock = asyncio.Lock()


async def _init_db(conn: aiosqlite.Connection) -> None:
    for script in DB_INIT_SCRIPTS:
        if not os.path.exists(script) or os.path.getsize(script) == 0:
            continue
        _logger.info(f"Initializing database with script {script}...")
        with open(script, "r") as f:
            await conn.executescript(f.read())


async def _table_exists(conn: aiosqlite.Connection, table_name: str) -> bool:
    cur = await conn.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name = ?;
        """,
        (table_name,),
    )
    row = await cur.fetchone()
    await cur.close()
    return row is not None


@asynccontextmanager
async def connect() -> AsyncIterator[aiosqlite.Connection]:
    """Async context manager yielding an aiosqlite connection with FK enabled.

    The connection runs in autocommit mode; multi-statement work goes through
    ``transaction()``. Ensures the schema exists on first use.
    """
    global _initialized
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = await aiosqlite.connect(
        DB_PATH, timeout=get_settings().busy_timeout, isolation_level=None
    )
    try:
        conn.row_factory = Row
        await conn.execute("PRAGMA foreign_keys = ON;")

        if not _initialized:
            async with _init_lock:
                if not _initialized:
                    if not await _table_exists(conn, "orders"):
                        _logger.info("Initializing database...")
                        await _init_db(conn)
                    _initialized = True
        yield conn
    finally:
        await conn.close()


@asynccontextmanager
async def transaction() -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection and hold the database write lock for the block.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so two writers can
    never both read a stock level and then both decrement it. Commits when the
    block exits normally, rolls back on any exception.
    """
    async with connect() as conn:
        await conn.execute("BEGIN IMMEDIATE;")
        try:
            yield conn
        except BaseException:
            await conn.rollback()
            raise
        else:
            await conn.commit()


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


async def run_in_transaction(
    work: Callable[[aiosqlite.Connection], Awaitable[T]],
    *,
    label: str = "transaction",
    attempts: int | None = None,
    backoff: float | None = None,
) -> T:
    """Run ``work(conn)`` inside ``transaction()``, retrying lock conflicts.

    The whole callable is re-run on retry, so every read-check-write inside it
    sees fresh rows. Delays grow as ``backoff * 2**n``; after the last attempt
    a ``StorageUnavailable`` is raised. Engine errors raised by ``work`` are
    never retried.
    """
    settings = get_settings()
    attempts = attempts or settings.tx_max_attempts
    backoff = settings.tx_backoff_base if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            async with transaction() as conn:
                return await work(conn)
        except sqlite3.OperationalError as exc:
            if not _is_transient(exc):
                raise StorageUnavailable(attempt, str(exc)) from exc
            if attempt == attempts:
                _logger.error(f"{label}: giving up after {attempt} attempt(s): {exc}")
                raise StorageUnavailable(attempt, str(exc)) from exc
            delay = backoff * (2 ** (attempt - 1))
            _logger.warning(
                f"{label}: database busy ({exc}), retry {attempt}/{attempts - 1} in {delay:.3f}s"
            )
            await asyncio.sleep(delay)

    raise StorageUnavailable(attempts, "no attempt made")
