"""Tests for the SQLite database layer (app/db.py)."""

from __future__ import annotations

import pytest

from app.db import SqliteStorage, close_db, get_db, init_db
from core.token_store import TokenStore


@pytest.fixture(autouse=True)
def _override_db_path(monkeypatch, tmp_path):
    """Use a temporary database for every test."""
    monkeypatch.setenv("DB_PATH", str(tmp_path / "test.db"))
    # Clear the cached settings so it picks up the new env var.
    from app.config import get_settings
    get_settings.cache_clear()


@pytest.fixture
async def db():
    conn = await init_db()
    yield conn
    await close_db()


@pytest.mark.asyncio
async def test_init_creates_kv_table(db):
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    )
    tables = [row[0] for row in await cursor.fetchall()]
    assert "kv_store" in tables


@pytest.mark.asyncio
async def test_get_db_before_init_raises():
    """get_db should raise RuntimeError if called before init_db."""
    # Ensure db is closed from any prior test.
    await close_db()
    with pytest.raises(RuntimeError, match="not initialised"):
        get_db()


@pytest.mark.asyncio
async def test_storage_roundtrip(db):
    storage = SqliteStorage("profile-a")
    assert await storage.get_item("k") is None

    await storage.set_item("k", "v1")
    await storage.set_item("k", "v2")
    assert await storage.get_item("k") == "v2"

    cursor = await db.execute("SELECT COUNT(*) FROM kv_store")
    assert (await cursor.fetchone())[0] == 1

    await storage.remove_item("k")
    assert await storage.get_item("k") is None


@pytest.mark.asyncio
async def test_profiles_are_isolated(db):
    await TokenStore(SqliteStorage("a")).save("token-a")
    await TokenStore(SqliteStorage("b")).save("token-b")

    await TokenStore(SqliteStorage("a")).clear()
    assert await TokenStore(SqliteStorage("a")).load() is None
    assert await TokenStore(SqliteStorage("b")).load() == "token-b"


@pytest.mark.asyncio
async def test_token_survives_reconnect(db):
    await TokenStore(SqliteStorage("a")).save("abc123")
    await close_db()
    await init_db()
    assert await TokenStore(SqliteStorage("a")).load() == "abc123"
