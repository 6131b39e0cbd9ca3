"""Dashboard session: login lifecycle and statistics loading per browser profile.

Manages the session state, the cached token, the current bundle and the
single observable error.  Every failure of the auth flow, the API client or
the aggregator is caught here and turned into ``DashboardSession.error`` with a
retry action that re-runs only the failed phase.

Nothing is cancellable.  Instead each in-flight operation remembers the
session ``epoch`` it started in; ``logout()`` bumps the epoch, so a late
result is dropped instead of resurrecting an authenticated state.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Protocol

from app import aggregator, spotify_client
from app.aggregator import AggregateError
from app.auth import AuthError, AuthorizationFlow
from app.config import ConfigError, Settings, get_settings
from app.db import SqliteStorage
from app.spotify_client import ApiError
from core.models import DataBundle, DecodeError, TimeRange, UserProfile
from core.token_store import KeyValueStorage, StorageError, TokenStore

logger = logging.getLogger(__name__)

BundleLoader = Callable[[str, TimeRange, int], Awaitable[DataBundle]]
ProfileLoader = Callable[[str], Awaitable[UserProfile]]


class CodeExchanger(Protocol):
    """Trusted collaborator that owns the client secret."""

    def login_url(self) -> str: ...

    async def exchange(self, code: str) -> str: ...


# ---------------------------------------------------------------------------
# Session states
# ---------------------------------------------------------------------------

class SessionState(str, Enum):
    BOOTING = "booting"
    UNAUTHENTICATED = "unauthenticated"
    EXCHANGING_CODE = "exchanging_code"
    AUTHENTICATED = "authenticated"
    DATA_LOADING = "data_loading"
    DATA_READY = "data_ready"
    AUTH_ERROR = "auth_error"
    DATA_ERROR = "data_error"


# States in which a token is held.
AUTHENTICATED_STATES = frozenset(
    {
        SessionState.AUTHENTICATED,
        SessionState.DATA_LOADING,
        SessionState.DATA_READY,
        SessionState.DATA_ERROR,
    }
)


class ErrorKind(str, Enum):
    AUTH = "auth"
    DATA = "data"
    CONFIG = "config"


class SessionError:
    """The one error a session exposes to the presentation layer."""

    __slots__ = ("kind", "message", "detail", "retry")

    def __init__(self, kind: ErrorKind, message: str, detail: str = "", retry: str | None = None):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.retry = retry  # "exchange" | "reload" | "login" | "logout" | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
            "retry": self.retry,
        }


class NotAuthenticated(Exception):
    """Raised when a data operation is requested without a token."""


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class DashboardSession:
    """State machine for one browser profile."""

    def __init__(
        self,
        *,
        token_store: TokenStore,
        flow: CodeExchanger,
        load_bundle: BundleLoader = aggregator.load_bundle,
        load_profile: ProfileLoader = spotify_client.get_profile,
        default_time_range: TimeRange = TimeRange.MEDIUM_TERM,
        limit: int = 3,
        config_problem: str | None = None,
    ):
        self._tokens = token_store
        self._flow = flow
        self._load_bundle = load_bundle
        self._load_profile = load_profile
        self._default_time_range = TimeRange.parse(default_time_range)
        self._config_problem = config_problem

        self.state = SessionState.BOOTING
        self.token: str | None = None
        self.time_range = self._default_time_range
        self.limit = limit
        self.bundle: DataBundle | None = None
        self.profile: UserProfile | None = None
        self.error: SessionError | None = None

        self._epoch = 0
        self._booting = False
        self._last_code: str | None = None
        self._unsaved_token: str | None = None
        self._logout_pending = False

    # -- properties ---------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self.state in AUTHENTICATED_STATES

    def snapshot(self) -> dict[str, Any]:
        """Serialize for the presentation layer.  Never contains the token."""
        return {
            "state": self.state.value,
            "authenticated": self.is_authenticated,
            "time_range": self.time_range.value,
            "limit": self.limit,
            "bundle": self.bundle.model_dump(mode="json") if self.bundle else None,
            "profile": self.profile.model_dump(mode="json") if self.profile else None,
            "error": self.error.to_dict() if self.error else None,
        }

    # -- boot / login -------------------------------------------------------

    async def boot(self, code: str | None = None, error: str | None = None) -> SessionState:
        """Page load: restore a cached token or consume a redirect code.

        A cached token always wins over a code in the URL.  Calls while a
        token is held or while another boot/exchange runs are ignored.
        """
        if self._booting or self.is_authenticated or self.state is SessionState.EXCHANGING_CODE:
            logger.debug("Ignoring boot in state %s", self.state.value)
            return self.state

        epoch = self._epoch
        self._booting = True
        self.state = SessionState.BOOTING
        self.error = None
        try:
            if self._logout_pending and not await self._clear_stored_token():
                self.state = SessionState.UNAUTHENTICATED
                return self.state
            token = await self._tokens.load()
        except StorageError as exc:
            if epoch == self._epoch:
                self._last_code = code
                self._fail_auth(exc, retry="exchange" if code else "login")
            return self.state
        finally:
            self._booting = False
        if epoch != self._epoch:
            return self.state

        if token:
            logger.info("Restored cached access token")
            self._enter_authenticated(token)
            return self.state

        if error:
            self._last_code = None
            self._fail_auth(AuthError(f"Spotify auth error: {error}"), retry="login")
            return self.state

        if code:
            return await self._exchange(code)

        self.state = SessionState.UNAUTHENTICATED
        if self._config_problem:
            self.error = SessionError(
                ErrorKind.CONFIG,
                "Spotify client credentials are not configured",
                self._config_problem,
            )
        return self.state

    def login_url(self) -> str:
        """Authorize URL for the login redirect; raises ``ConfigError``."""
        try:
            return self._flow.login_url()
        except ConfigError as exc:
            self.error = SessionError(ErrorKind.CONFIG, "Spotify client credentials are not configured", str(exc))
            raise

    async def _exchange(self, code: str) -> SessionState:
        epoch = self._epoch
        self._last_code = code
        self._unsaved_token = None
        self.state = SessionState.EXCHANGING_CODE
        self.error = None

        try:
            token = await self._flow.exchange(code)
        except ConfigError as exc:
            if epoch == self._epoch:
                self.state = SessionState.AUTH_ERROR
                self.error = SessionError(
                    ErrorKind.CONFIG,
                    "Spotify client credentials are not configured",
                    str(exc),
                    retry="exchange",
                )
            return self.state
        except AuthError as exc:
            if epoch == self._epoch:
                self._fail_auth(exc, retry="exchange")
            return self.state

        if epoch != self._epoch:
            logger.info("Discarding access token that arrived after logout")
            return self.state
        return await self._persist(token, epoch)

    async def _persist(self, token: str, epoch: int) -> SessionState:
        """Save a freshly exchanged token, then enter ``Authenticated``.

        The token is kept aside while the write fails, so a retry repeats
        only the save; the spent code is never sent again.
        """
        try:
            await self._tokens.save(token)
        except StorageError as exc:
            if epoch == self._epoch:
                self._fail_auth(exc, retry="exchange")
                self._unsaved_token = token
            return self.state

        if epoch != self._epoch:
            # Logged out while the write was pending.
            self._logout_pending = True
            await self._clear_stored_token()
            return self.state

        self._enter_authenticated(token)
        return self.state

    def _enter_authenticated(self, token: str) -> None:
        self.token = token
        self._unsaved_token = None
        self.error = None
        self.state = SessionState.AUTHENTICATED

    def _fail_auth(self, exc: Exception, *, retry: str) -> None:
        logger.warning("Authentication failed: %s", exc)
        self.token = None
        self.state = SessionState.AUTH_ERROR
        self.error = SessionError(ErrorKind.AUTH, "Failed to authenticate with Spotify", str(exc), retry=retry)

    # -- data ---------------------------------------------------------------

    def _require_token(self) -> str:
        if not self.is_authenticated or self.token is None:
            raise NotAuthenticated("Not logged in — please /login")
        return self.token

    async def load_data(self, time_range: TimeRange | str | None = None, limit: int | None = None) -> SessionState:
        """Load the bundle.  A call while a load is in flight is a no-op
        apart from recording the requested range, which the running load
        picks up once it settles."""
        self._require_token()
        new_range = TimeRange.parse(time_range) if time_range is not None else None
        if limit is not None and limit < 1:
            raise ValueError("limit must be positive")

        if new_range is not None:
            self.time_range = new_range
        if self.state is SessionState.DATA_LOADING:
            logger.debug("Load already in flight, ignoring")
            return self.state

        if limit is not None:
            self.limit = limit
        return await self._run_load()

    async def set_time_range(self, time_range: TimeRange | str) -> SessionState:
        """Switch the time range; refetches when a bundle is displayed.

        While a load is in flight the new range is picked up as soon as it
        settles (one follow-up fetch).
        """
        self._require_token()
        new_range = TimeRange.parse(time_range)
        if new_range is self.time_range:
            return self.state

        self.time_range = new_range
        if self.state is SessionState.DATA_READY:
            return await self._run_load()
        return self.state

    async def _run_load(self) -> SessionState:
        epoch = self._epoch
        token = self._require_token()
        self.state = SessionState.DATA_LOADING
        self.error = None

        while True:
            requested = self.time_range
            try:
                bundle = await self._load_bundle(token, requested, self.limit)
            except (AggregateError, ApiError, DecodeError) as exc:
                if epoch != self._epoch:
                    return self.state
                logger.warning("Loading data failed: %s", exc)
                self.bundle = None
                self.state = SessionState.DATA_ERROR
                self.error = SessionError(ErrorKind.DATA, "Failed to load data", str(exc), retry="reload")
                return self.state

            if epoch != self._epoch:
                logger.info("Discarding bundle that arrived after logout")
                return self.state
            if self.time_range is not requested:
                logger.info("Time range changed to %s during load, refetching", self.time_range.value)
                continue

            self.bundle = bundle
            self.state = SessionState.DATA_READY
            return self.state

    async def load_profile(self) -> UserProfile | None:
        """Fetch ``/v1/me`` for the profile dropdown.  API errors propagate."""
        token = self._require_token()
        epoch = self._epoch
        profile = await self._load_profile(token)
        if epoch != self._epoch:
            return None
        self.profile = profile
        return profile

    # -- retry / logout -----------------------------------------------------

    async def retry(self, code: str | None = None) -> SessionState:
        """Re-run exactly the phase that failed."""
        if self._logout_pending:
            return await self.logout()

        if self.state is SessionState.AUTH_ERROR:
            if self._unsaved_token and not code:
                return await self._persist(self._unsaved_token, self._epoch)
            code = code or self._last_code
            if not code:
                self.error = None
                self.state = SessionState.UNAUTHENTICATED
                return self.state
            return await self._exchange(code)

        if self.state is SessionState.DATA_ERROR:
            return await self._run_load()

        return self.state

    async def logout(self) -> SessionState:
        """Forget the token, the bundle and the profile; reset the range.

        If the stored token cannot be removed the session stays logged out
        with a ``logout`` retry, and every later boot tries the removal
        again before it looks for a cached token.
        """
        self._epoch += 1
        self.token = None
        self.bundle = None
        self.profile = None
        self.error = None
        self._last_code = None
        self._unsaved_token = None
        self.time_range = self._default_time_range
        self.state = SessionState.UNAUTHENTICATED
        self._logout_pending = True
        if await self._clear_stored_token():
            logger.info("Logged out")
        return self.state

    async def _clear_stored_token(self) -> bool:
        try:
            await self._tokens.clear()
        except StorageError as exc:
            logger.warning("Logout incomplete: %s", exc)
            self.error = SessionError(ErrorKind.AUTH, "Failed to log out", str(exc), retry="logout")
            return False
        self._logout_pending = False
        return True


# ---------------------------------------------------------------------------
# Registry (one session per browser profile)
# ---------------------------------------------------------------------------

def _worth_keeping(session: DashboardSession) -> bool:
    """A logged-out session with nothing to show can be rebuilt on demand."""
    if session.state is not SessionState.UNAUTHENTICATED:
        return True
    return session.error is not None and session.error.kind is not ErrorKind.CONFIG


class SessionRegistry:
    """In-memory map of browser-profile id → ``DashboardSession``.

    Only sessions that hold something (a token, a running exchange, an
    error to show or retry) are kept, at most ``max_sessions`` of them with
    the least recently used dropped first.  A dropped profile boots again
    from its stored token on the next request.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        storage_factory: Callable[[str], KeyValueStorage] = SqliteStorage,
        flow: CodeExchanger | None = None,
        load_bundle: BundleLoader = aggregator.load_bundle,
        load_profile: ProfileLoader = spotify_client.get_profile,
        max_sessions: int | None = None,
    ):
        self._settings = settings
        self._storage_factory = storage_factory
        self._flow = flow or AuthorizationFlow(settings)
        self._load_bundle = load_bundle
        self._load_profile = load_profile
        self._max_sessions = max_sessions or settings.max_sessions
        self._sessions: OrderedDict[str, DashboardSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, profile_id: str) -> DashboardSession | None:
        return self._sessions.get(profile_id)

    def _create(self, profile_id: str) -> DashboardSession:
        missing = self._settings.missing_credentials()
        return DashboardSession(
            token_store=TokenStore(self._storage_factory(profile_id)),
            flow=self._flow,
            load_bundle=self._load_bundle,
            load_profile=self._load_profile,
            default_time_range=self._settings.default_time_range,
            limit=self._settings.bundle_limit,
            config_problem=f"{', '.join(missing)} not set" if missing else None,
        )

    def _remember(self, profile_id: str, session: DashboardSession) -> None:
        self._sessions[profile_id] = session
        self._sessions.move_to_end(profile_id)
        while len(self._sessions) > self._max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted session for profile %s", evicted)

    def release(self, profile_id: str) -> None:
        """Forget the profile's session unless it still holds state."""
        session = self._sessions.get(profile_id)
        if session is not None and not _worth_keeping(session):
            del self._sessions[profile_id]

    async def open(
        self,
        profile_id: str,
        *,
        code: str | None = None,
        error: str | None = None,
    ) -> DashboardSession:
        """Return the profile's session, booting it on first use.

        A redirect back from Spotify (``code`` or ``error``) always counts as
        a fresh page load.
        """
        session = self._sessions.get(profile_id)
        if session is None:
            session = self._create(profile_id)
            # Registered before booting so concurrent requests share it.
            self._remember(profile_id, session)
            await session.boot(code=code, error=error)
        else:
            self._sessions.move_to_end(profile_id)
            if code or error:
                await session.boot(code=code, error=error)
        self.release(profile_id)
        return session


@lru_cache
def get_registry() -> SessionRegistry:
    """Process-wide registry built from the cached settings."""
    return SessionRegistry(get_settings())
