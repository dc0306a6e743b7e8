"""SQLite database management for pmm with async support.

The inventory table is written synchronously after every position change
so a restart resumes from the last known position. Fills go through
aiosqlite to keep the event loop free while quoting.
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncGenerator, Generator, Optional

import aiosqlite

from pmm.utils.logging import get_logger

log = get_logger(__name__)

# Default database path
DEFAULT_DB_PATH = Path.home() / ".pmm" / "pmm.db"

# Global database path (can be overridden for testing)
_db_path: Optional[Path] = None

# Async connection (single shared connection)
_async_conn: Optional[aiosqlite.Connection] = None
_async_lock = asyncio.Lock()


def set_db_path(path: Path) -> None:
    """Set the database path (useful for testing)."""
    global _db_path
    _db_path = Path(path)


def get_db_path() -> Path:
    """Get the current database path."""
    return _db_path or DEFAULT_DB_PATH


# =============================================================================
# Async API (fills / PnL)
# =============================================================================

async def get_async_connection() -> aiosqlite.Connection:
    """Get or create the async database connection."""
    global _async_conn

    async with _async_lock:
        if _async_conn is None:
            db_path = get_db_path()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            _async_conn = await aiosqlite.connect(str(db_path), timeout=30.0)
            await _async_conn.execute("PRAGMA journal_mode = WAL")
            await _async_conn.execute("PRAGMA synchronous = NORMAL")
            _async_conn.row_factory = aiosqlite.Row
            log.debug("Async database connection established", path=str(db_path))
        return _async_conn


@asynccontextmanager
async def get_async_db() -> AsyncGenerator[aiosqlite.Connection, None]:
    """Async context manager for database access."""
    conn = await get_async_connection()
    try:
        yield conn
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def close_async_db() -> None:
    """Close the async database connection."""
    global _async_conn
    async with _async_lock:
        if _async_conn is not None:
            await _async_conn.close()
            _async_conn = None
            log.debug("Async database connection closed")


async def init_async_db() -> None:
    """Initialize the database schema asynchronously."""
    async with get_async_db() as conn:
        await conn.executescript(SCHEMA)
    log.info("Database schema initialized (async)", path=str(get_db_path()))


# =============================================================================
# Sync API (inventory write-through, CLI)
# =============================================================================

@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Sync context manager for database access."""
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.row_factory = sqlite3.Row

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Initialize the database schema synchronously."""
    with get_db() as conn:
        conn.executescript(SCHEMA)
    log.info("Database schema initialized", path=str(get_db_path()))


# =============================================================================
# Schema
# =============================================================================

SCHEMA = """
-- Current position per outcome token, overwritten on every change
CREATE TABLE IF NOT EXISTS inventory (
    token_id TEXT PRIMARY KEY,
    shares REAL NOT NULL,
    updated_at REAL NOT NULL
);

-- Append-only fill log; fill_key deduplicates feed redeliveries
CREATE TABLE IF NOT EXISTS fills (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fill_key TEXT NOT NULL UNIQUE,
    order_id TEXT NOT NULL,
    token_id TEXT NOT NULL,
    side TEXT NOT NULL,
    price REAL NOT NULL,
    size REAL NOT NULL,
    fee REAL NOT NULL DEFAULT 0,
    timestamp REAL NOT NULL,
    market_slug TEXT
);

CREATE INDEX IF NOT EXISTS idx_fills_token ON fills(token_id);
CREATE INDEX IF NOT EXISTS idx_fills_timestamp ON fills(timestamp);
"""
