"""Application settings loaded from .env via pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from core.models import DEFAULT_TIME_RANGE, TimeRange


class ConfigError(Exception):
    """Raised when required Spotify client credentials are missing."""


class Settings(BaseSettings):
    """Central configuration — values come from environment / .env file."""

    # Spotify (both stay server-side, never rendered to the browser)
    spotify_client_id: str = ""
    spotify_client_secret: str = ""

    # App
    base_url: str = "http://127.0.0.1:8000"
    secret_key: str = "change-me"

    # Database
    db_path: str = "./data/stats_dashboard.db"

    # Dashboard
    default_time_range: TimeRange = DEFAULT_TIME_RANGE
    bundle_limit: int = 3
    max_sessions: int = 1000  # sessions kept in memory, least recently used dropped first

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def redirect_uri(self) -> str:
        """Fixed OAuth redirect URI for this deployment."""
        return f"{self.base_url.rstrip('/')}/callback"

    @property
    def db_abs_path(self) -> Path:
        """Return the database path as an absolute Path, creating parents if needed."""
        p = Path(self.db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        return p.resolve()

    def missing_credentials(self) -> list[str]:
        """Names of the required credentials that are not set."""
        missing = []
        if not self.spotify_client_id:
            missing.append("SPOTIFY_CLIENT_ID")
        if not self.spotify_client_secret:
            missing.append("SPOTIFY_CLIENT_SECRET")
        return missing

    def require_credentials(self) -> None:
        """Raise ``ConfigError`` naming every missing credential."""
        missing = self.missing_credentials()
        if missing:
            raise ConfigError(f"{', '.join(missing)} not set")


@lru_cache
def get_settings() -> Settings:
    """Cached singleton so .env is read only once."""
    return Settings()
