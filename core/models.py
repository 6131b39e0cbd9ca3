"""Pydantic models shared across the application."""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

M = TypeVar("M", bound=BaseModel)


class DecodeError(Exception):
    """Raised when a Spotify payload does not match the expected schema."""

    def __init__(self, what: str, detail: str):
        self.what = what
        self.detail = detail
        super().__init__(f"Could not decode {what}: {detail}")


class TimeRange(str, Enum):
    """Window over which Spotify computes "top" statistics."""

    SHORT_TERM = "short_term"  # ~4 weeks
    MEDIUM_TERM = "medium_term"  # ~6 months
    LONG_TERM = "long_term"  # several years

    @classmethod
    def parse(cls, value: "TimeRange | str") -> "TimeRange":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(r.value for r in cls)
            raise ValueError(f"Unknown time range {value!r} (expected one of: {allowed})") from None


DEFAULT_TIME_RANGE = TimeRange.MEDIUM_TERM


class Image(BaseModel):
    url: str
    height: Optional[int] = None
    width: Optional[int] = None


class ExternalUrls(BaseModel):
    spotify: str = ""


class Followers(BaseModel):
    total: int = 0


class ArtistRef(BaseModel):
    """Artist as embedded in a track object (no id for local files)."""

    id: Optional[str] = None
    name: str


class AlbumRef(BaseModel):
    id: Optional[str] = None
    name: str
    images: List[Image] = Field(default_factory=list)


class Track(BaseModel):
    """A Spotify track; identity is ``id``.

    Local files played through the Spotify client have no ``id``, only a
    ``spotify:local:`` uri.
    """

    id: Optional[str] = None
    name: str
    uri: str = ""
    is_local: bool = False
    artists: List[ArtistRef] = Field(default_factory=list)
    album: AlbumRef
    duration_ms: int
    external_urls: ExternalUrls = Field(default_factory=ExternalUrls)

    @property
    def primary_artist(self) -> str:
        return self.artists[0].name if self.artists else ""


class Artist(BaseModel):
    """A Spotify artist; identity is ``id``."""

    id: str
    name: str
    images: List[Image] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    followers: Followers = Field(default_factory=Followers)
    external_urls: ExternalUrls = Field(default_factory=ExternalUrls)


class PlayHistoryEntry(BaseModel):
    """One play of a track.  The same track can recur, so identity is
    ``(track.id, played_at)``, with the uri standing in for a local file."""

    track: Track
    played_at: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.track.id or self.track.uri, self.played_at)


class UserProfile(BaseModel):
    """Current user as returned by ``/v1/me``."""

    id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None
    product: Optional[str] = None
    images: List[Image] = Field(default_factory=list)
    followers: Followers = Field(default_factory=Followers)


class DataBundle(BaseModel):
    """Joined result of the three statistics calls for one time range.

    Only ever built once all three lists resolved.
    """

    time_range: TimeRange
    top_tracks: List[Track]
    top_artists: List[Artist]
    recent: List[PlayHistoryEntry]


# ---------------------------------------------------------------------------
# Decoding helpers
# ---------------------------------------------------------------------------

def decode(model: Type[M], payload: Any, what: str) -> M:
    """Validate *payload* into *model*, raising ``DecodeError`` on mismatch."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(what, str(exc)) from exc


def decode_items(model: Type[M], payload: Any, what: str) -> list[M]:
    """Decode the ``items`` array of a Spotify paging object."""
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise DecodeError(what, "response has no 'items' list")
    return [decode(model, item, what) for item in payload["items"]]
