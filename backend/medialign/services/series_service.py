"""Series library operations: registration, scanning and user corrections."""

import asyncio
import logging
from pathlib import Path

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from medialign.core.errors import (
    InputError,
    NotFoundError,
    PersistenceError,
    SeriesAlreadyRunningError,
    error_context,
)
from medialign.core.filesystem import FileSystem, LocalFileSystem, scan_directory
from medialign.database import async_session
from medialign.models import AudioSegmentRecord, Episode, FileStatus, MediaFile, Series
from medialign.services.file_state_machine import IN_FLIGHT_STATUSES, FileStateMachine
from medialign.services.series_scheduler import event_broadcaster, series_scheduler
from medialign.services.tmdb_client import (
    CachedMetadataProvider,
    EpisodeInfo,
    create_metadata_provider,
)

logger = logging.getLogger(__name__)


async def _get_series(series_id: int) -> Series:
    async with async_session() as session:
        series = await session.get(Series, series_id)
    if series is None:
        raise NotFoundError(f"Series {series_id} not found")
    return series


async def _get_file(file_id: int) -> MediaFile:
    async with async_session() as session:
        media_file = await session.get(MediaFile, file_id)
    if media_file is None:
        raise NotFoundError(f"File {file_id} not found")
    return media_file


def _normalize_directory(directory: str) -> Path:
    return Path(directory).expanduser()


async def _sync_episodes(series_id: int, episodes: list[EpisodeInfo]) -> int:
    """Upsert provider episodes by (season, episode). Returns how many were new."""
    async with async_session() as session:
        result = await session.execute(select(Episode).where(Episode.series_id == series_id))
        existing = {(e.season_number, e.episode_number): e for e in result.scalars().all()}

        added = 0
        for info in episodes:
            row = existing.get((info.season_number, info.episode_number))
            if row is None:
                row = Episode(
                    series_id=series_id,
                    season_number=info.season_number,
                    episode_number=info.episode_number,
                    title=info.title,
                    synopsis=info.synopsis,
                    external_id=info.external_id,
                )
                existing[(info.season_number, info.episode_number)] = row
                added += 1
            else:
                row.title = info.title
                row.synopsis = info.synopsis
                row.external_id = info.external_id
            session.add(row)
        await session.commit()

    logger.info(f"[SERIES {series_id}] synced {len(episodes)} episodes ({added} new)")
    return added


async def _register_files(series: Series, fs: FileSystem) -> list[MediaFile]:
    """Create File rows for videos under the series directory not seen before."""
    videos = await asyncio.to_thread(scan_directory, fs, Path(series.directory))

    async with async_session() as session:
        result = await session.execute(
            select(MediaFile.original_path).where(MediaFile.series_id == series.id)
        )
        known = set(result.scalars().all())

        new_files = [
            MediaFile(series_id=series.id, original_path=str(path), original_filename=path.name)
            for path in videos
            if str(path) not in known
        ]
        session.add_all(new_files)
        await session.commit()
        for media_file in new_files:
            await session.refresh(media_file)

    logger.info(f"[SERIES {series.id}] registered {len(new_files)} new files")
    return new_files


async def add_series(
    directory: str,
    tmdb_id: str,
    provider: CachedMetadataProvider | None = None,
    fs: FileSystem | None = None,
) -> Series:
    """Register a series directory, load its episodes and discover its files.

    Adding a directory that is already registered refreshes that series.

    Raises:
        InputError: If the directory does not exist
        MetadataError: If the provider lookup fails
    """
    fs = fs or LocalFileSystem()
    root = _normalize_directory(directory)
    if not fs.is_dir(root):
        raise InputError(f"Directory does not exist: {root}")

    provider = provider or await create_metadata_provider()
    info = await provider.get_series_info(str(tmdb_id))
    episodes = await provider.get_all_episodes(str(tmdb_id))

    async with async_session() as session:
        result = await session.execute(select(Series).where(Series.directory == str(root)))
        series = result.scalars().first()
        if series is None:
            series = Series(tmdb_id=info.external_id, title=info.title, directory=str(root))
            logger.info(f"Adding series '{info.title}' at {root}")
        else:
            series.tmdb_id = info.external_id
            series.title = info.title
            logger.info(f"[SERIES {series.id}] directory already registered, refreshing")
        session.add(series)
        await session.commit()
        await session.refresh(series)

    await _sync_episodes(series.id, episodes)
    await _register_files(series, fs)
    return series


async def rescan_series(series_id: int, fs: FileSystem | None = None) -> list[MediaFile]:
    """Pick up video files added to the directory since the last scan.

    Raises:
        NotFoundError: If the series does not exist
        InputError: If its directory is gone
    """
    series = await _get_series(series_id)
    return await _register_files(series, fs or LocalFileSystem())


async def update_series(
    series_id: int,
    directory: str | None = None,
    tmdb_id: str | None = None,
    provider: CachedMetadataProvider | None = None,
    fs: FileSystem | None = None,
) -> Series:
    """Change the directory and/or metadata id. A new metadata id reloads the episodes.

    Raises:
        NotFoundError: If the series does not exist
        InputError: If the new directory does not exist
    """
    series = await _get_series(series_id)
    values: dict = {}

    if directory is not None:
        root = _normalize_directory(directory)
        if not (fs or LocalFileSystem()).is_dir(root):
            raise InputError(f"Directory does not exist: {root}")
        values["directory"] = str(root)

    episodes: list[EpisodeInfo] | None = None
    if tmdb_id is not None and str(tmdb_id) != series.tmdb_id:
        provider = provider or await create_metadata_provider()
        info = await provider.get_series_info(str(tmdb_id))
        episodes = await provider.get_all_episodes(str(tmdb_id))
        values["tmdb_id"] = info.external_id
        values["title"] = info.title

    if values:
        async with async_session() as session:
            series = await session.get(Series, series_id)
            for key, value in values.items():
                setattr(series, key, value)
            session.add(series)
            await session.commit()
            await session.refresh(series)
        logger.info(f"[SERIES {series_id}] updated {sorted(values)}")

    if episodes is not None:
        await _sync_episodes(series_id, episodes)
    return series


async def delete_series(series_id: int) -> None:
    """Remove a series with its episodes, files and segment records.

    Files on disk are not touched.

    Raises:
        NotFoundError: If the series does not exist
        SeriesAlreadyRunningError: If the series is being processed
    """
    await _get_series(series_id)
    if series_scheduler.is_running(series_id):
        raise SeriesAlreadyRunningError(series_id)

    with error_context(
        error_types=(SQLAlchemyError,),
        default_message=f"Failed to delete series {series_id}",
        wrap_as=PersistenceError,
    ):
        async with async_session() as session:
            file_ids = select(MediaFile.id).where(MediaFile.series_id == series_id)
            await session.execute(
                delete(AudioSegmentRecord).where(AudioSegmentRecord.file_id.in_(file_ids))
            )
            await session.execute(delete(MediaFile).where(MediaFile.series_id == series_id))
            await session.execute(delete(Episode).where(Episode.series_id == series_id))
            await session.execute(delete(Series).where(Series.id == series_id))
            await session.commit()

    logger.info(f"[SERIES {series_id}] deleted")


async def fix_file(
    file_id: int, episode_id: int, machine: FileStateMachine | None = None
) -> Path:
    """Apply the user's episode choice: rename on disk and mark the file fixed.

    Raises:
        NotFoundError: If the file or episode does not exist
        InputError: If the episode belongs to another series or the file is
            being analyzed by an active run
        RenameError: If the rename is refused
    """
    media_file = await _get_file(file_id)
    async with async_session() as session:
        episode = await session.get(Episode, episode_id)
    if episode is None:
        raise NotFoundError(f"Episode {episode_id} not found")
    if episode.series_id != media_file.series_id:
        raise InputError(
            f"Episode {episode_id} does not belong to series {media_file.series_id}"
        )
    if media_file.status in IN_FLIGHT_STATUSES and series_scheduler.is_running(
        media_file.series_id
    ):
        raise InputError(f"File {file_id} is being analyzed, try again when it finishes")

    machine = machine or FileStateMachine(event_broadcaster)
    return await machine.apply_fix(media_file, episode)


async def reprocess_file(file_id: int, machine: FileStateMachine | None = None) -> MediaFile:
    """Queue a file for identification again on the next series run.

    Raises:
        NotFoundError: If the file does not exist
        InputError: If the file is being analyzed by an active run
    """
    media_file = await _get_file(file_id)
    if media_file.status in IN_FLIGHT_STATUSES and series_scheduler.is_running(
        media_file.series_id
    ):
        raise InputError(f"File {file_id} is being analyzed")

    machine = machine or FileStateMachine(event_broadcaster)
    await machine.reset(media_file)
    logger.info(f"[FILE {file_id}] queued for reprocessing")
    return media_file


async def get_processing_summary(series_id: int) -> dict:
    """File counts per status for a series."""
    await _get_series(series_id)
    async with async_session() as session:
        result = await session.execute(
            select(MediaFile.status, func.count(MediaFile.id))
            .where(MediaFile.series_id == series_id)
            .group_by(MediaFile.status)
        )
        rows = result.all()

    counts = {status.value: 0 for status in FileStatus}
    for status, count in rows:
        counts[FileStatus(status).value] = count
    return {"series_id": series_id, "total": sum(counts.values()), **counts}


async def list_segments(file_id: int) -> list[AudioSegmentRecord]:
    """Stored transcripts of the file's last content analysis."""
    await _get_file(file_id)
    async with async_session() as session:
        result = await session.execute(
            select(AudioSegmentRecord)
            .where(AudioSegmentRecord.file_id == file_id)
            .order_by(AudioSegmentRecord.segment_number)
        )
        return list(result.scalars().all())
