"""Process-wide key/value settings stored in SQLite.

Settings persist across restarts and can be modified at any time via the
API. Values are stored as text; typed accessors live in config_service.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from medialign.core.clock import utcnow


class Setting(SQLModel, table=True):
    """User-configurable setting row."""

    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow)
