"""Metadata provider response cache."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from medialign.core.clock import utcnow


class CacheKind(str, Enum):
    """Cache partitions, by lookup granularity."""

    SERIES = "series"
    SEASON = "season"
    EPISODE = "episode"


class CacheEntry(SQLModel, table=True):
    """A cached provider payload (JSON text) addressed by its natural key."""

    __tablename__ = "cache_entries"

    id: int | None = Field(default=None, primary_key=True)
    kind: CacheKind = Field(index=True)
    # "1399", "1399/1", "1399/1/3" - unique within a kind
    cache_key: str = Field(index=True)
    external_id: str
    season_number: int | None = None
    episode_number: int | None = None

    payload: str  # JSON
    last_updated: datetime = Field(default_factory=utcnow)
