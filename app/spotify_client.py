"""Authenticated Spotify Web API calls for the statistics dashboard.

One primitive (``authed_fetch``) plus thin endpoint wrappers that decode
the JSON into typed models.  Deliberately simple:
  - single attempt per call, no retry or backoff
  - any non-2xx status is terminal and raises ``ApiError``
  - an optional shared ``httpx.AsyncClient`` can be passed in
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from core.models import (
    Artist,
    PlayHistoryEntry,
    TimeRange,
    Track,
    UserProfile,
    decode,
    decode_items,
)

logger = logging.getLogger(__name__)

_SPOTIFY_API = "https://api.spotify.com"
_CONNECT_TIMEOUT = 10.0  # seconds
_READ_TIMEOUT = 30.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApiError(Exception):
    """Raised when a Spotify data endpoint returns a non-success status.

    ``status_code`` is 0 when no response was received at all.
    """

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Spotify API error {status_code}: {detail}")


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def new_client() -> httpx.AsyncClient:
    """HTTP client with the timeouts used for every Spotify call."""
    return httpx.AsyncClient(timeout=httpx.Timeout(_READ_TIMEOUT, connect=_CONNECT_TIMEOUT))


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    """Use the caller's client as-is, or open (and close) a private one."""
    if client is not None:
        yield client
        return
    async with new_client() as own:
        yield own


async def authed_fetch(
    path: str,
    token: str,
    *,
    params: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
    base_url: str = _SPOTIFY_API,
) -> Any:
    """GET *path* with a bearer token and return the decoded JSON body.

    Raises
    ------
    ApiError
        On any non-2xx status, on transport failure (status 0) or when the
        body is not JSON.
    """
    url = f"{base_url}{path}"
    headers = {"Authorization": f"Bearer {token}"}

    async with _client_scope(client) as http:
        try:
            resp = await http.get(url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Request to %s failed: %s", path, exc)
            raise ApiError(0, str(exc)) from exc

    if not resp.is_success:
        logger.warning("Spotify returned %d for %s", resp.status_code, path)
        raise ApiError(resp.status_code, resp.text)

    try:
        return resp.json()
    except ValueError as exc:
        raise ApiError(resp.status_code, "response body is not JSON") from exc


# ---------------------------------------------------------------------------
# Endpoint wrappers
# ---------------------------------------------------------------------------

async def get_top_tracks(
    token: str,
    time_range: TimeRange | str = TimeRange.MEDIUM_TERM,
    limit: int = 10,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[Track]:
    """Return the user's top tracks for *time_range*, provider order."""
    time_range = TimeRange.parse(time_range)
    data = await authed_fetch(
        "/v1/me/top/tracks",
        token,
        params={"time_range": time_range.value, "limit": limit},
        client=client,
    )
    return decode_items(Track, data, "top tracks")


async def get_top_artists(
    token: str,
    time_range: TimeRange | str = TimeRange.MEDIUM_TERM,
    limit: int = 10,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[Artist]:
    """Return the user's top artists for *time_range*, provider order."""
    time_range = TimeRange.parse(time_range)
    data = await authed_fetch(
        "/v1/me/top/artists",
        token,
        params={"time_range": time_range.value, "limit": limit},
        client=client,
    )
    return decode_items(Artist, data, "top artists")


async def get_recently_played(
    token: str,
    limit: int = 10,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[PlayHistoryEntry]:
    """Return the most recent plays, newest first."""
    data = await authed_fetch(
        "/v1/me/player/recently-played",
        token,
        params={"limit": limit},
        client=client,
    )
    return decode_items(PlayHistoryEntry, data, "recently played")


async def get_profile(
    token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> UserProfile:
    """Return the current user's profile (``/v1/me``)."""
    data = await authed_fetch("/v1/me", token, client=client)
    return decode(UserProfile, data, "user profile")
