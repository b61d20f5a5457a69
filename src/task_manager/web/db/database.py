"""Async SQLite connection manager (singleton pattern)."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_db: aiosqlite.Connection | None = None
_db_path: str = ""


async def connect(db_path: str) -> aiosqlite.Connection:
    """Open a connection and make sure the schema exists."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # autocommit: every statement is its own transaction, the connection is shared
    db = await aiosqlite.connect(db_path, isolation_level=None)
    db.row_factory = aiosqlite.Row
    # Several worker processes share one file
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")

    await db.executescript(SCHEMA_PATH.read_text())
    await db.commit()
    return db


async def init_db(db_path: str) -> None:
    """Initialize the database connection and run schema."""
    global _db, _db_path
    _db_path = db_path
    _db = await connect(db_path)


async def get_db() -> aiosqlite.Connection:
    """Get the active database connection."""
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db


async def close_db() -> None:
    """Close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
