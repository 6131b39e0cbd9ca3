"""Access-token store over an injectable key-value storage.

The store holds exactly one entry.  Absence of the entry means "logged out".
No expiry checks happen here: an expired token looks valid until the API
answers 401.
"""

from __future__ import annotations

import sqlite3
from typing import Protocol

TOKEN_KEY = "spotify_access_token"


class StorageError(Exception):
    """The backing storage could not be read or written."""


class KeyValueStorage(Protocol):
    """Minimal async string storage (think ``localStorage``)."""

    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed storage, used in tests and as a process-local fallback."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)


class TokenStore:
    """Get / set / clear the persisted access token."""

    def __init__(self, storage: KeyValueStorage, key: str = TOKEN_KEY):
        self._storage = storage
        self._key = key

    async def load(self) -> str | None:
        try:
            token = await self._storage.get_item(self._key)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Could not read the stored token: {exc}") from exc
        return token or None

    async def save(self, token: str) -> None:
        if not token:
            raise ValueError("Refusing to persist an empty access token")
        try:
            await self._storage.set_item(self._key, token)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Could not store the token: {exc}") from exc

    async def clear(self) -> None:
        try:
            await self._storage.remove_item(self._key)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"Could not clear the stored token: {exc}") from exc
