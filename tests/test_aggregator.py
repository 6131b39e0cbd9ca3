"""Tests for the concurrent bundle loader (app/aggregator.py)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from app.aggregator import BUNDLE_FIELDS, AggregateError, load_bundle
from app.spotify_client import ApiError
from core.models import DecodeError, TimeRange

_TRACKS = "/v1/me/top/tracks"
_ARTISTS = "/v1/me/top/artists"
_RECENT = "/v1/me/player/recently-played"


def _track(i: int) -> dict:
    return {
        "id": f"t{i}",
        "name": f"Track {i}",
        "artists": [{"id": f"a{i}", "name": f"Artist {i}"}],
        "album": {"id": f"al{i}", "name": f"Album {i}", "images": []},
        "duration_ms": 200000,
    }


def _artist(i: int) -> dict:
    return {"id": f"a{i}", "name": f"Artist {i}", "images": [], "genres": [], "followers": {"total": i}}


def _ok_routes(n: int = 3) -> dict[str, tuple[int, dict]]:
    return {
        _TRACKS: (200, {"items": [_track(i) for i in range(n)]}),
        _ARTISTS: (200, {"items": [_artist(i) for i in range(n)]}),
        _RECENT: (
            200,
            {"items": [{"track": _track(i), "played_at": f"2024-05-01T10:0{i}:00Z"} for i in range(n)]},
        ),
    }


class GatedTransport(httpx.AsyncBaseTransport):
    """Holds every request until *expected* requests are in flight.

    Sequential callers would never reach the gate, so a timeout here means
    the calls were not issued concurrently.
    """

    def __init__(self, routes: dict[str, tuple[int, object]], expected: int = 3, delays: dict[str, float] | None = None):
        self._routes = routes
        self._expected = expected
        self._delays = delays or {}
        self._arrived = 0
        self._gate = asyncio.Event()
        self.started: list[str] = []
        self.finished: list[str] = []

    async def handle_async_request(self, request: httpx.Request):
        path = request.url.path
        self.started.append(path)
        self._arrived += 1
        if self._arrived >= self._expected:
            self._gate.set()
        await asyncio.wait_for(self._gate.wait(), timeout=2)
        await asyncio.sleep(self._delays.get(path, 0))
        self.finished.append(path)
        status, body = self._routes[path]
        return httpx.Response(status, json=body)


@pytest.mark.asyncio
async def test_bundle_success_keeps_provider_order():
    transport = GatedTransport(_ok_routes(3))
    async with httpx.AsyncClient(transport=transport) as http:
        bundle = await load_bundle("tok", TimeRange.MEDIUM_TERM, 3, client=http)

    assert bundle.time_range is TimeRange.MEDIUM_TERM
    assert [t.id for t in bundle.top_tracks] == ["t0", "t1", "t2"]
    assert [a.id for a in bundle.top_artists] == ["a0", "a1", "a2"]
    assert [p.played_at for p in bundle.recent] == [
        "2024-05-01T10:00:00Z",
        "2024-05-01T10:01:00Z",
        "2024-05-01T10:02:00Z",
    ]


@pytest.mark.asyncio
async def test_bundle_calls_are_concurrent():
    transport = GatedTransport(_ok_routes(1))
    async with httpx.AsyncClient(transport=transport) as http:
        await load_bundle("tok", TimeRange.SHORT_TERM, 1, client=http)

    assert sorted(transport.started) == sorted([_TRACKS, _ARTISTS, _RECENT])
    assert len(transport.finished) == 3


@pytest.mark.asyncio
async def test_bundle_forwards_range_and_limit():
    transport = GatedTransport(_ok_routes(2))
    seen: list[httpx.Request] = []
    original = transport.handle_async_request

    async def spy(request):
        seen.append(request)
        return await original(request)

    transport.handle_async_request = spy
    async with httpx.AsyncClient(transport=transport) as http:
        await load_bundle("tok", "long_term", 10, client=http)

    by_path = {r.url.path: r.url.params for r in seen}
    assert by_path[_TRACKS]["time_range"] == "long_term"
    assert by_path[_ARTISTS]["time_range"] == "long_term"
    assert by_path[_RECENT]["limit"] == "10"
    assert "time_range" not in by_path[_RECENT]


@pytest.mark.asyncio
async def test_one_failure_fails_whole_bundle_after_siblings_settle():
    routes = _ok_routes(3)
    routes[_TRACKS] = (500, {"error": "boom"})
    transport = GatedTransport(routes, delays={_ARTISTS: 0.05, _RECENT: 0.05})

    async with httpx.AsyncClient(transport=transport) as http:
        with pytest.raises(AggregateError) as exc_info:
            await load_bundle("tok", TimeRange.MEDIUM_TERM, 3, client=http)

    failures = exc_info.value.failures
    assert list(failures) == ["top_tracks"]
    assert isinstance(failures["top_tracks"], ApiError)
    assert failures["top_tracks"].status_code == 500
    # The slower siblings still ran to completion before the error surfaced.
    assert sorted(transport.finished) == sorted([_TRACKS, _ARTISTS, _RECENT])


@pytest.mark.asyncio
async def test_multiple_failures_are_all_reported():
    routes = _ok_routes(3)
    routes[_ARTISTS] = (401, {"error": "expired"})
    routes[_RECENT] = (200, {"no_items": True})
    transport = GatedTransport(routes)

    async with httpx.AsyncClient(transport=transport) as http:
        with pytest.raises(AggregateError) as exc_info:
            await load_bundle("tok", TimeRange.MEDIUM_TERM, 3, client=http)

    failures = exc_info.value.failures
    assert set(failures) == {"top_artists", "recent"}
    assert isinstance(failures["recent"], DecodeError)
    assert "2 of 3" in str(exc_info.value)


@pytest.mark.asyncio
async def test_empty_lists_are_a_valid_bundle():
    transport = GatedTransport(_ok_routes(0))
    async with httpx.AsyncClient(transport=transport) as http:
        bundle = await load_bundle("tok", TimeRange.MEDIUM_TERM, 3, client=http)
    assert bundle.top_tracks == [] and bundle.top_artists == [] and bundle.recent == []


@pytest.mark.asyncio
async def test_opens_shared_client_when_none_given(monkeypatch):
    transport = GatedTransport(_ok_routes(1))
    created: list[httpx.AsyncClient] = []

    def factory():
        http = httpx.AsyncClient(transport=transport)
        created.append(http)
        return http

    monkeypatch.setattr("app.spotify_client.new_client", factory)
    await load_bundle("tok", TimeRange.MEDIUM_TERM, 1)

    assert len(created) == 1
    assert created[0].is_closed


def test_bundle_fields_order():
    assert BUNDLE_FIELDS == ("top_tracks", "top_artists", "recent")
