"""Fan-out / fan-in of the three statistics calls into one ``DataBundle``.

All three requests start together on a shared HTTP client.  ``gather`` is
run with ``return_exceptions=True`` so every sibling settles before a
failure is reported and no task is left with an unobserved exception.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from app import spotify_client
from core.models import DataBundle, TimeRange

logger = logging.getLogger(__name__)

# Field order is the order results come back from ``gather``.
BUNDLE_FIELDS = ("top_tracks", "top_artists", "recent")


class AggregateError(Exception):
    """Raised when any constituent call of a bundle fails.

    ``failures`` maps the bundle field name to the exception it raised.
    """

    def __init__(self, failures: dict[str, BaseException]):
        self.failures = failures
        parts = ", ".join(f"{name}: {exc}" for name, exc in failures.items())
        super().__init__(f"Failed to load {len(failures)} of {len(BUNDLE_FIELDS)} lists ({parts})")


async def load_bundle(
    token: str,
    time_range: TimeRange | str,
    limit: int = 3,
    *,
    client: httpx.AsyncClient | None = None,
) -> DataBundle:
    """Fetch top tracks, top artists and recent plays concurrently.

    All-or-nothing: returns a complete bundle or raises ``AggregateError``.
    """
    time_range = TimeRange.parse(time_range)

    if client is None:
        async with spotify_client.new_client() as own:
            return await _gather_bundle(token, time_range, limit, own)
    return await _gather_bundle(token, time_range, limit, client)


async def _gather_bundle(
    token: str,
    time_range: TimeRange,
    limit: int,
    client: httpx.AsyncClient,
) -> DataBundle:
    results = await asyncio.gather(
        spotify_client.get_top_tracks(token, time_range, limit, client=client),
        spotify_client.get_top_artists(token, time_range, limit, client=client),
        spotify_client.get_recently_played(token, limit, client=client),
        return_exceptions=True,
    )

    failures = {
        name: result
        for name, result in zip(BUNDLE_FIELDS, results)
        if isinstance(result, BaseException)
    }
    if failures:
        logger.warning("Bundle for %s failed: %s", time_range.value, ", ".join(failures))
        raise AggregateError(failures)

    fields = dict(zip(BUNDLE_FIELDS, results))
    logger.info(
        "Loaded bundle for %s: %d tracks, %d artists, %d recent",
        time_range.value,
        len(fields["top_tracks"]),
        len(fields["top_artists"]),
        len(fields["recent"]),
    )
    return DataBundle(time_range=time_range, **fields)
