"""Async SQLite database layer.

Uses aiosqlite for non-blocking access.  The single table is created on
first startup via ``init_db()``.  Each browser profile gets its own
namespace of key-value entries (in practice: one access token).
"""

from __future__ import annotations

import aiosqlite

from app.config import get_settings

# Module-level connection (set during lifespan startup).
_db: aiosqlite.Connection | None = None

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    profile_id  TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (profile_id, key)
);
"""


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

async def init_db() -> aiosqlite.Connection:
    """Open (or create) the SQLite database and ensure schema exists."""
    global _db  # noqa: PLW0603
    settings = get_settings()
    db_path = settings.db_abs_path

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row  # type: ignore[assignment]
    await _db.executescript(_SCHEMA_SQL)
    await _db.commit()
    return _db


async def close_db() -> None:
    """Close the database connection."""
    global _db  # noqa: PLW0603
    if _db is not None:
        await _db.close()
        _db = None


def get_db() -> aiosqlite.Connection:
    """Return the current database connection (call after init)."""
    if _db is None:
        raise RuntimeError("Database not initialised — call init_db() first.")
    return _db


# ---------------------------------------------------------------------------
# Key-value storage for the token store
# ---------------------------------------------------------------------------

class SqliteStorage:
    """``KeyValueStorage`` scoped to one browser profile.

    Every write is committed before returning, so a following ``get_item``
    sees it.
    """

    def __init__(self, profile_id: str):
        self.profile_id = profile_id

    async def get_item(self, key: str) -> str | None:
        db = get_db()
        cursor = await db.execute(
            "SELECT value FROM kv_store WHERE profile_id = ? AND key = ?",
            (self.profile_id, key),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set_item(self, key: str, value: str) -> None:
        db = get_db()
        await db.execute(
            """
            INSERT INTO kv_store (profile_id, key, value)
            VALUES (?, ?, ?)
            ON CONFLICT(profile_id, key)
            DO UPDATE SET value      = excluded.value,
                          updated_at = datetime('now')
            """,
            (self.profile_id, key, value),
        )
        await db.commit()

    async def remove_item(self, key: str) -> None:
        db = get_db()
        await db.execute(
            "DELETE FROM kv_store WHERE profile_id = ? AND key = ?",
            (self.profile_id, key),
        )
        await db.commit()
