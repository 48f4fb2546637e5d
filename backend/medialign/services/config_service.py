"""Configuration service for managing user settings.

Settings are key/value rows in SQLite. This module owns the defaults and
the typed accessors the pipeline reads at run start.
"""

import logging
import os

from sqlmodel import select

from medialign.core.clock import utcnow
from medialign.database import async_session
from medialign.models import Setting

logger = logging.getLogger(__name__)

MAX_EXTRACTION_PROCESSES = "max_extraction_processes"
TMDB_API_KEY = "tmdb_api_key"
FFMPEG_PATH = "ffmpeg_path"
FFPROBE_PATH = "ffprobe_path"
MATCH_CONFIDENCE_THRESHOLD = "match_confidence_threshold"
CACHE_MAX_AGE_DAYS = "cache_max_age_days"

# Empty strings never overwrite these
SENSITIVE_KEYS = {TMDB_API_KEY}


def default_max_extraction_processes() -> int:
    """Half of the logical cores, at least one."""
    return max(1, (os.cpu_count() or 1) // 2)


def default_settings() -> dict[str, str]:
    return {
        MAX_EXTRACTION_PROCESSES: str(default_max_extraction_processes()),
        TMDB_API_KEY: "",
        FFMPEG_PATH: "",
        FFPROBE_PATH: "",
        MATCH_CONFIDENCE_THRESHOLD: "0.3",
        CACHE_MAX_AGE_DAYS: "30",
    }


async def get_settings() -> dict[str, str]:
    """All settings, stored values overlaid on defaults."""
    values = default_settings()
    async with async_session() as session:
        result = await session.execute(select(Setting))
        for row in result.scalars().all():
            values[row.key] = row.value
    return values


async def get_setting(key: str) -> str | None:
    """Stored value for key, falling back to its default (None for unknown keys)."""
    async with async_session() as session:
        row = await session.get(Setting, key)
        if row is not None:
            return row.value
    return default_settings().get(key)


async def update_settings(**kwargs) -> dict[str, str]:
    """Update settings with provided values.

    None values are skipped, as are empty strings for sensitive keys.

    Returns:
        The full settings mapping after the update
    """
    changed = []
    async with async_session() as session:
        for key, value in kwargs.items():
            if value is None:
                continue
            value = str(value)
            if key in SENSITIVE_KEYS and not value.strip():
                continue

            row = await session.get(Setting, key)
            if row is None:
                session.add(Setting(key=key, value=value))
            else:
                row.value = value
                row.updated_at = utcnow()
                session.add(row)
            changed.append(key)
        await session.commit()

    if changed:
        logger.info(f"Updated settings: {changed}")
    return await get_settings()


def _as_int(raw: str | None, default: int, key: str) -> int:
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r} in settings, using {default}")
        return default


def _as_float(raw: str | None, default: float, key: str) -> float:
    try:
        return float(raw) if raw is not None else default
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r} in settings, using {default}")
        return default


async def get_max_extraction_processes() -> int:
    """Concurrency bound for series runs. Invalid stored values fall back to the default."""
    default = default_max_extraction_processes()
    value = _as_int(await get_setting(MAX_EXTRACTION_PROCESSES), default, MAX_EXTRACTION_PROCESSES)
    if value < 1:
        logger.warning(f"Invalid {MAX_EXTRACTION_PROCESSES}={value} in settings, using {default}")
        return default
    return value


async def get_confidence_threshold() -> float:
    return _as_float(await get_setting(MATCH_CONFIDENCE_THRESHOLD), 0.3, MATCH_CONFIDENCE_THRESHOLD)


async def get_cache_max_age_days() -> int:
    return _as_int(await get_setting(CACHE_MAX_AGE_DAYS), 30, CACHE_MAX_AGE_DAYS)
