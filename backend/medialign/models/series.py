"""Series and Episode models - the matching targets."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from medialign.core.clock import utcnow


class Series(SQLModel, table=True):
    """A tracked TV show with a root media directory."""

    __tablename__ = "series"

    id: int | None = Field(default=None, primary_key=True)
    tmdb_id: str = Field(index=True)  # External metadata identifier
    title: str
    directory: str = Field(index=True)

    created_at: datetime = Field(default_factory=utcnow)
    last_processed_at: datetime | None = None


class Episode(SQLModel, table=True):
    """One canonical (season, episode) unit of a Series, as reported by the provider."""

    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("series_id", "season_number", "episode_number", name="uq_episode_number"),
    )

    id: int | None = Field(default=None, primary_key=True)
    series_id: int = Field(foreign_key="series.id", index=True)
    season_number: int
    episode_number: int
    title: str
    synopsis: str = ""
    external_id: str | None = None

    @property
    def code(self) -> str:
        return f"S{self.season_number:02d}E{self.episode_number:02d}"
