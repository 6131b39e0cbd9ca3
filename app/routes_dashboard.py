"""Dashboard routes: OAuth callback, logout and the session JSON API.

The browser holds only a signed cookie with an opaque ``profile_id``; the
token and the bundle live in the profile's ``DashboardSession``.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from app.config import ConfigError
from app.session import DashboardSession, NotAuthenticated, get_registry
from app.spotify_client import ApiError
from core.models import DecodeError, TimeRange

router = APIRouter(tags=["dashboard"])


def _profile_id(request: Request) -> str:
    """Return the browser profile id, issuing one on first visit."""
    pid = request.session.get("profile_id")
    if not pid:
        pid = secrets.token_urlsafe(24)
        request.session["profile_id"] = pid
    return pid


async def _get_session(request: Request) -> DashboardSession:
    return await get_registry().open(_profile_id(request))


def _parse_range(value: str | None) -> TimeRange | None:
    if value is None:
        return None
    try:
        return TimeRange.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# OAuth redirect target
# ---------------------------------------------------------------------------

@router.get("/callback")
async def callback(request: Request, code: str | None = None, error: str | None = None):
    """Handle Spotify's redirect, then drop the code from the visible URL."""
    if not code and not error:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    await get_registry().open(_profile_id(request), code=code, error=error)
    return RedirectResponse("/", status_code=303)


@router.get("/logout")
async def logout(request: Request):
    """Clear the token and bundle, then go home."""
    session = await _get_session(request)
    await session.logout()
    get_registry().release(_profile_id(request))
    return RedirectResponse("/")


# ---------------------------------------------------------------------------
# Session API
# ---------------------------------------------------------------------------

@router.get("/")
async def home(request: Request):
    """Current session snapshot (presentation renders from this)."""
    session = await _get_session(request)
    return JSONResponse(session.snapshot())


@router.get("/api/session")
async def session_status(request: Request):
    session = await _get_session(request)
    return JSONResponse(session.snapshot())


@router.post("/api/data")
async def load_data(request: Request, time_range: str | None = None, limit: int | None = None):
    """Load (or reload) the statistics bundle."""
    session = await _get_session(request)
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    try:
        await session.load_data(_parse_range(time_range), limit)
    except NotAuthenticated as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return JSONResponse(session.snapshot())


@router.post("/api/time-range")
async def change_time_range(request: Request, time_range: str):
    session = await _get_session(request)
    try:
        await session.set_time_range(_parse_range(time_range))
    except NotAuthenticated as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return JSONResponse(session.snapshot())


@router.post("/api/retry")
async def retry(request: Request):
    """Re-run whichever phase failed (code exchange or data load)."""
    session = await _get_session(request)
    await session.retry()
    get_registry().release(_profile_id(request))
    return JSONResponse(session.snapshot())


@router.get("/api/login-url")
async def login_url(request: Request):
    session = await _get_session(request)
    try:
        url = session.login_url()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return JSONResponse({"url": url})


@router.get("/api/me")
async def me(request: Request):
    """Profile for the dropdown."""
    session = await _get_session(request)
    try:
        profile = await session.load_profile()
    except NotAuthenticated as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except (ApiError, DecodeError) as exc:
        raise HTTPException(status_code=502, detail=f"Failed to fetch Spotify profile: {exc}") from exc
    if profile is None:
        raise HTTPException(status_code=401, detail="Logged out while loading profile")
    return JSONResponse(profile.model_dump(mode="json"))
