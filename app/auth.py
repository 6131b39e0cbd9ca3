"""Spotify OAuth 2.0 Authorization Code flow (confidential client).

Flow:
  1. GET /login        → redirect to Spotify /authorize (show_dialog=true)
  2. GET /callback     → exchange code for an access token via /api/token
  3. Token stored per browser profile through the token store
  4. Session cookie holds only the opaque ``profile_id``

The client secret is used here, server-side, and never leaves the process.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, HTTPException
from fastapi.responses import RedirectResponse

from app.config import ConfigError, Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

# Scopes required by the dashboard (profile dropdown + statistics)
SCOPES = (
    "user-read-private",
    "user-read-email",
    "user-top-read",
    "user-read-recently-played",
    "user-read-currently-playing",
)

_SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
_SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
_EXCHANGE_TIMEOUT = 10.0  # seconds
# Spotify authorization codes expire after ten minutes.
_MAX_CONSUMED_CODES = 4096


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class AuthError(Exception):
    """Logging in failed: bad or reused code, bad credentials, network."""


class ExchangeError(AuthError):
    """The token endpoint rejected the code or answered without a token."""

    def __init__(self, detail: str, status_code: int | None = None):
        self.status_code = status_code
        self.detail = detail
        prefix = f"Token exchange failed ({status_code})" if status_code else "Token exchange failed"
        super().__init__(f"{prefix}: {detail}")


# ---------------------------------------------------------------------------
# Flow primitives
# ---------------------------------------------------------------------------

def build_login_url(client_id: str, redirect_uri: str, scopes: Iterable[str]) -> str:
    """Return the Spotify authorize URL.

    ``show_dialog=true`` forces the consent screen on every login, so the
    provider never silently re-authorises a previous account.
    """
    if not client_id:
        raise ConfigError("SPOTIFY_CLIENT_ID not set")
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "show_dialog": "true",
    }
    return f"{_SPOTIFY_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    *,
    client: httpx.AsyncClient | None = None,
    token_url: str = _SPOTIFY_TOKEN_URL,
) -> str:
    """Trade a one-time authorization *code* for an access token.

    The request authenticates with HTTP Basic ``client_id:client_secret``.

    Raises
    ------
    ConfigError
        If either credential is empty (no request is made).
    ExchangeError
        On transport failure, non-2xx status, or a body without
        ``access_token``.
    """
    if not client_id or not client_secret:
        raise ConfigError("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must both be set")

    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    }
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=_EXCHANGE_TIMEOUT) as own:
                resp = await own.post(token_url, data=data, auth=(client_id, client_secret))
        else:
            resp = await client.post(token_url, data=data, auth=(client_id, client_secret))
    except httpx.HTTPError as exc:
        raise ExchangeError(f"network error: {exc}") from exc

    if not resp.is_success:
        raise ExchangeError(resp.text, status_code=resp.status_code)

    try:
        body = resp.json()
    except ValueError as exc:
        raise ExchangeError("response body is not JSON", status_code=resp.status_code) from exc

    token = body.get("access_token") if isinstance(body, dict) else None
    if not token or not isinstance(token, str):
        raise ExchangeError("response has no access_token", status_code=resp.status_code)
    return token


class AuthorizationFlow:
    """Login URL + code exchange bound to one deployment's settings.

    Codes are consumed at most once: a code is recorded before its request
    goes out, and any later attempt with it fails without touching the
    network.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        scopes: Iterable[str] = SCOPES,
        client: httpx.AsyncClient | None = None,
        token_url: str = _SPOTIFY_TOKEN_URL,
        max_consumed: int = _MAX_CONSUMED_CODES,
    ):
        self._settings = settings
        self._scopes = tuple(scopes)
        self._client = client
        self._token_url = token_url
        self._max_consumed = max_consumed
        self._consumed: OrderedDict[str, None] = OrderedDict()

    def login_url(self) -> str:
        return build_login_url(
            self._settings.spotify_client_id,
            self._settings.redirect_uri,
            self._scopes,
        )

    def is_consumed(self, code: str) -> bool:
        return code in self._consumed

    async def exchange(self, code: str) -> str:
        if not code:
            raise AuthError("Missing authorization code")
        if code in self._consumed:
            raise AuthError("Authorization code was already used, please log in again")
        self._settings.require_credentials()

        self._consumed[code] = None
        while len(self._consumed) > self._max_consumed:
            self._consumed.popitem(last=False)
        logger.info("Exchanging authorization code for access token")
        return await exchange_code(
            code,
            self._settings.spotify_client_id,
            self._settings.spotify_client_secret,
            self._settings.redirect_uri,
            client=self._client,
            token_url=self._token_url,
        )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/login")
async def login():
    """Start the Spotify login flow (full-page redirect)."""
    settings = get_settings()
    try:
        settings.require_credentials()
        url = build_login_url(settings.spotify_client_id, settings.redirect_uri, SCOPES)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return RedirectResponse(url)
