"""Server-level configuration from environment variables.

Only contains settings needed before the database is available:
database URL, server host/port, data directories and debug mode. All
fields have defaults; no .env file is required.

User-editable settings (TMDB key, extraction concurrency, thresholds)
live in the database as key/value rows (see models/setting.py).
"""

import sys
import tempfile
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    """Return the directory for the database and log files."""
    if getattr(sys, "frozen", False):
        # Frozen build: store data in a stable, user-writable location
        return Path.home() / ".medialign"
    # Development: keep everything next to the working directory
    return Path("./.medialign")


def _default_database_url() -> str:
    data_dir = _default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_dir / 'medialign.db'}"


class Settings(BaseSettings):
    """Server infrastructure settings. Loaded from environment variables; optionally from .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = _default_database_url()

    # Storage
    data_dir: Path = _default_data_dir()
    audio_temp_dir: Path = Path(tempfile.gettempdir()) / "medialign-audio"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False


settings = Settings()
