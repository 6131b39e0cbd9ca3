"""Tests for the access-token store (core/token_store.py)."""

import sqlite3

import pytest

from core.token_store import TOKEN_KEY, MemoryStorage, StorageError, TokenStore


@pytest.mark.asyncio
async def test_load_empty_store():
    assert await TokenStore(MemoryStorage()).load() is None


@pytest.mark.asyncio
async def test_save_is_visible_to_next_load():
    store = TokenStore(MemoryStorage())
    await store.save("abc123")
    assert await store.load() == "abc123"

    await store.save("def456")
    assert await store.load() == "def456"


@pytest.mark.asyncio
async def test_clear_removes_token():
    storage = MemoryStorage({TOKEN_KEY: "abc123"})
    store = TokenStore(storage)
    await store.clear()
    assert await store.load() is None
    # Clearing twice is harmless.
    await store.clear()


@pytest.mark.asyncio
async def test_uses_fixed_key():
    storage = MemoryStorage()
    await TokenStore(storage).save("abc123")
    assert await storage.get_item("spotify_access_token") == "abc123"


@pytest.mark.asyncio
async def test_empty_string_counts_as_absent():
    assert await TokenStore(MemoryStorage({TOKEN_KEY: ""})).load() is None


@pytest.mark.asyncio
async def test_refuses_empty_token():
    with pytest.raises(ValueError):
        await TokenStore(MemoryStorage()).save("")


class BrokenStorage(MemoryStorage):
    """Storage whose backend is unavailable."""

    async def get_item(self, key):
        raise sqlite3.OperationalError("database is locked")

    async def set_item(self, key, value):
        raise OSError("disk full")

    async def remove_item(self, key):
        raise OSError("read-only file system")


@pytest.mark.asyncio
async def test_backend_failures_become_storage_errors():
    store = TokenStore(BrokenStorage())
    with pytest.raises(StorageError, match="database is locked"):
        await store.load()
    with pytest.raises(StorageError, match="disk full"):
        await store.save("abc123")
    with pytest.raises(StorageError, match="read-only"):
        await store.clear()
