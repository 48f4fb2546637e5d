"""Metadata Cache - TTL-bounded store of metadata provider responses.

Three partitions (series, season, episode), each addressed by its natural
key. Entries older than max_age are misses even while still on disk;
evict_expired() physically removes them.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlmodel import select

from medialign.core.clock import utcnow
from medialign.database import async_session
from medialign.models import CacheEntry, CacheKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(days=30)


@dataclass
class CachedPayload:
    payload: Any
    last_updated: datetime


def cache_key(
    kind: CacheKind, external_id: str, season: int | None = None, episode: int | None = None
) -> str:
    """Natural key of an entry within its partition.

    Raises:
        ValueError: If the key parts do not fit the partition
    """
    if kind == CacheKind.SERIES:
        return str(external_id)
    if kind == CacheKind.SEASON:
        if season is None:
            raise ValueError("Season cache keys need a season number")
        return f"{external_id}/{season}"
    if season is None or episode is None:
        raise ValueError("Episode cache keys need season and episode numbers")
    return f"{external_id}/{season}/{episode}"


class MetadataCache:
    """Provider response cache persisted in the cache_entries table."""

    def __init__(
        self,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.max_age = max_age
        self._clock = clock

    async def get(
        self,
        kind: CacheKind,
        external_id: str,
        season: int | None = None,
        episode: int | None = None,
        max_age: timedelta | None = None,
    ) -> CachedPayload | None:
        """Return the cached payload, or None on a miss or an expired entry."""
        key = cache_key(kind, external_id, season, episode)
        max_age = max_age if max_age is not None else self.max_age

        async with async_session() as session:
            result = await session.execute(
                select(CacheEntry).where(CacheEntry.kind == kind, CacheEntry.cache_key == key)
            )
            entry = result.scalars().first()

        if entry is None:
            return None
        if self._clock() - entry.last_updated >= max_age:
            logger.debug(f"Cache entry {kind.value}:{key} expired (updated {entry.last_updated})")
            return None

        try:
            payload = json.loads(entry.payload)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable cache entry {kind.value}:{key}")
            return None
        return CachedPayload(payload=payload, last_updated=entry.last_updated)

    async def put(
        self,
        kind: CacheKind,
        external_id: str,
        payload: Any,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        """Insert or replace the entry, stamping it with the current time."""
        key = cache_key(kind, external_id, season, episode)
        data = json.dumps(payload)

        async with async_session() as session:
            result = await session.execute(
                select(CacheEntry).where(CacheEntry.kind == kind, CacheEntry.cache_key == key)
            )
            entry = result.scalars().first()
            if entry is None:
                entry = CacheEntry(
                    kind=kind,
                    cache_key=key,
                    external_id=str(external_id),
                    season_number=season,
                    episode_number=episode,
                    payload=data,
                    last_updated=self._clock(),
                )
            else:
                entry.payload = data
                entry.last_updated = self._clock()
            session.add(entry)
            await session.commit()

        logger.debug(f"Cached {kind.value}:{key}")

    async def evict_expired(self, max_age: timedelta | None = None) -> int:
        """Delete entries older than max_age across all partitions. Returns the count."""
        max_age = max_age if max_age is not None else self.max_age
        cutoff = self._clock() - max_age

        async with async_session() as session:
            result = await session.execute(
                delete(CacheEntry).where(CacheEntry.last_updated <= cutoff)
            )
            await session.commit()

        removed = result.rowcount or 0
        if removed:
            logger.info(f"Evicted {removed} expired metadata cache entries")
        return removed
