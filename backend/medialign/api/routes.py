"""REST API routes for MediAlign."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from medialign.core.errors import (
    InputError,
    MediAlignError,
    MetadataError,
    NotFoundError,
    RenameError,
    SeriesAlreadyRunningError,
)
from medialign.database import get_session
from medialign.models import Episode, MediaFile, Series

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["series"])


# Request/Response Models
class SeriesResponse(BaseModel):
    """Response model for a series."""

    id: int
    tmdb_id: str
    title: str
    directory: str
    created_at: datetime
    last_processed_at: datetime | None = None


class SeriesCreate(BaseModel):
    """Request model for registering a series directory."""

    directory: str
    tmdb_id: str


class SeriesUpdate(BaseModel):
    """Request model for the mutable series fields."""

    directory: str | None = None
    tmdb_id: str | None = None


class EpisodeResponse(BaseModel):
    """Response model for an episode."""

    id: int
    series_id: int
    season_number: int
    episode_number: int
    title: str
    synopsis: str
    external_id: str | None = None


class FileResponse(BaseModel):
    """Response model for a media file and its identification state."""

    id: int
    series_id: int
    episode_id: int | None
    original_path: str
    original_filename: str
    corrected_filename: str | None
    status: str
    confidence: float
    is_verified: bool
    audio_extraction_status: str
    audio_extraction_progress: int
    processing_step: str
    error_message: str | None = None
    processed_at: datetime | None = None


class SegmentResponse(BaseModel):
    """Response model for a stored segment transcript."""

    segment_number: int
    start_seconds: float
    duration_seconds: float
    transcript: str | None


class FixRequest(BaseModel):
    """Request model for assigning an episode to a file."""

    episode_id: int


class SettingsResponse(BaseModel):
    """Response model for user settings."""

    max_extraction_processes: int
    tmdb_api_key: str
    ffmpeg_path: str
    ffprobe_path: str
    match_confidence_threshold: float
    cache_max_age_days: int


class SettingsUpdate(BaseModel):
    """Request model for updating settings."""

    max_extraction_processes: int | None = None
    tmdb_api_key: str | None = None
    ffmpeg_path: str | None = None
    ffprobe_path: str | None = None
    match_confidence_threshold: float | None = None
    cache_max_age_days: int | None = None


class SearchResultResponse(BaseModel):
    """Response model for a provider search hit."""

    external_id: str
    title: str
    first_air_date: str | None = None
    overview: str = ""


def _http_error(error: MediAlignError) -> HTTPException:
    """Map a pipeline error onto an HTTP status."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, SeriesAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (InputError, RenameError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, MetadataError):
        return HTTPException(status_code=502, detail=str(error))
    logger.error(f"Unhandled pipeline error: {error}", exc_info=True)
    return HTTPException(status_code=500, detail=str(error))


async def _require_series(session: AsyncSession, series_id: int) -> Series:
    series = await session.get(Series, series_id)
    if not series:
        raise HTTPException(status_code=404, detail="Series not found")
    return series


# Routes
@router.get("/series", response_model=list[SeriesResponse])
async def list_series(session: AsyncSession = Depends(get_session)) -> list[Series]:
    """List all registered series."""
    result = await session.execute(select(Series).order_by(Series.title))
    return list(result.scalars().all())


@router.post("/series", response_model=SeriesResponse, status_code=201)
async def create_series(request: SeriesCreate) -> Series:
    """Register a series directory and discover its files."""
    from medialign.services.series_service import add_series

    try:
        return await add_series(request.directory, request.tmdb_id)
    except MediAlignError as e:
        raise _http_error(e) from e


@router.get("/series/{series_id}", response_model=SeriesResponse)
async def get_series(series_id: int, session: AsyncSession = Depends(get_session)) -> Series:
    """Get a specific series by ID."""
    return await _require_series(session, series_id)


@router.patch("/series/{series_id}", response_model=SeriesResponse)
async def patch_series(series_id: int, request: SeriesUpdate) -> Series:
    """Change a series' directory or metadata id."""
    from medialign.services.series_service import update_series

    try:
        return await update_series(
            series_id, directory=request.directory, tmdb_id=request.tmdb_id
        )
    except MediAlignError as e:
        raise _http_error(e) from e


@router.delete("/series/{series_id}")
async def remove_series(series_id: int) -> dict:
    """Forget a series. Files on disk are left alone."""
    from medialign.services.series_service import delete_series

    try:
        await delete_series(series_id)
    except MediAlignError as e:
        raise _http_error(e) from e
    return {"status": "deleted", "series_id": series_id}


@router.post("/series/{series_id}/rescan")
async def rescan(series_id: int) -> dict:
    """Register video files added since the last scan."""
    from medialign.services.series_service import rescan_series

    try:
        new_files = await rescan_series(series_id)
    except MediAlignError as e:
        raise _http_error(e) from e
    return {
        "status": "rescanned",
        "series_id": series_id,
        "added": len(new_files),
        "files": [f.original_filename for f in new_files],
    }


@router.get("/series/{series_id}/episodes", response_model=list[EpisodeResponse])
async def get_series_episodes(
    series_id: int, session: AsyncSession = Depends(get_session)
) -> list[Episode]:
    """Get all episodes of a series in (season, episode) order."""
    await _require_series(session, series_id)
    result = await session.execute(
        select(Episode)
        .where(Episode.series_id == series_id)
        .order_by(Episode.season_number, Episode.episode_number)
    )
    return list(result.scalars().all())


@router.get("/series/{series_id}/files", response_model=list[FileResponse])
async def get_series_files(
    series_id: int, session: AsyncSession = Depends(get_session)
) -> list[MediaFile]:
    """Get all files of a series with their identification state."""
    await _require_series(session, series_id)
    result = await session.execute(
        select(MediaFile)
        .where(MediaFile.series_id == series_id)
        .order_by(MediaFile.original_filename)
    )
    return list(result.scalars().all())


@router.get("/series/{series_id}/summary")
async def get_series_summary(series_id: int) -> dict:
    """File counts per status."""
    from medialign.services.series_service import get_processing_summary

    try:
        return await get_processing_summary(series_id)
    except MediAlignError as e:
        raise _http_error(e) from e


@router.post("/series/{series_id}/run", status_code=202)
async def run_series(series_id: int) -> dict:
    """Start identifying the series' pending files in the background."""
    # Import here to avoid circular imports
    from medialign.services.series_scheduler import series_scheduler

    try:
        await series_scheduler.start(series_id)
    except MediAlignError as e:
        raise _http_error(e) from e
    return {"status": "started", "series_id": series_id}


@router.post("/series/{series_id}/cancel")
async def cancel_series(series_id: int, session: AsyncSession = Depends(get_session)) -> dict:
    """Stop a running series at the next batch boundary."""
    from medialign.services.series_scheduler import series_scheduler

    await _require_series(session, series_id)
    if not series_scheduler.cancel(series_id):
        return {"status": "not_running", "series_id": series_id}
    return {"status": "cancelling", "series_id": series_id}


@router.get("/series/{series_id}/extraction-status")
async def get_extraction_status(series_id: int) -> dict:
    """Aggregate and per-file extraction progress."""
    from medialign.services.series_scheduler import series_scheduler

    try:
        return await series_scheduler.get_extraction_status(series_id)
    except MediAlignError as e:
        raise _http_error(e) from e


@router.post("/files/{file_id}/fix")
async def fix_file(file_id: int, request: FixRequest) -> dict:
    """Assign an episode to a file and rename it on disk."""
    from medialign.services.series_service import fix_file as apply_fix

    try:
        new_path = await apply_fix(file_id, request.episode_id)
    except MediAlignError as e:
        raise _http_error(e) from e
    return {"status": "fixed", "file_id": file_id, "path": str(new_path)}


@router.post("/files/{file_id}/reprocess")
async def reprocess_file(file_id: int) -> dict:
    """Queue a file for identification on the next run."""
    from medialign.services.series_service import reprocess_file as queue_file

    try:
        media_file = await queue_file(file_id)
    except MediAlignError as e:
        raise _http_error(e) from e
    return {"status": media_file.status.value, "file_id": file_id}


@router.get("/files/{file_id}/segments", response_model=list[SegmentResponse])
async def get_file_segments(file_id: int) -> list:
    """Transcripts recorded during the file's last content analysis."""
    from medialign.services.series_service import list_segments

    try:
        return await list_segments(file_id)
    except MediAlignError as e:
        raise _http_error(e) from e


@router.get("/settings", response_model=SettingsResponse)
async def get_settings() -> SettingsResponse:
    """Get current settings.

    Sensitive fields (API keys) are redacted for security.
    """
    from medialign.services import config_service

    values = await config_service.get_settings()
    return SettingsResponse(
        max_extraction_processes=await config_service.get_max_extraction_processes(),
        tmdb_api_key="***" if values[config_service.TMDB_API_KEY] else "",  # Redacted
        ffmpeg_path=values[config_service.FFMPEG_PATH],
        ffprobe_path=values[config_service.FFPROBE_PATH],
        match_confidence_threshold=await config_service.get_confidence_threshold(),
        cache_max_age_days=await config_service.get_cache_max_age_days(),
    )


@router.patch("/settings")
async def update_settings(request: SettingsUpdate) -> dict:
    """Update settings and persist to database."""
    from medialign.services.config_service import update_settings as update_db_settings

    if request.max_extraction_processes is not None and request.max_extraction_processes < 1:
        raise HTTPException(status_code=400, detail="max_extraction_processes must be at least 1")
    if request.match_confidence_threshold is not None and not (
        0.0 <= request.match_confidence_threshold <= 1.0
    ):
        raise HTTPException(
            status_code=400, detail="match_confidence_threshold must be between 0 and 1"
        )

    # Build kwargs from non-None fields
    update_data = {k: v for k, v in request.model_dump().items() if v is not None}
    if update_data:
        await update_db_settings(**update_data)

    return {"status": "updated", "persisted": True}


@router.post("/cache/evict")
async def evict_cache() -> dict:
    """Delete metadata cache entries older than the configured max age."""
    from datetime import timedelta

    from medialign.services.config_service import get_cache_max_age_days
    from medialign.services.metadata_cache import MetadataCache

    max_age = timedelta(days=await get_cache_max_age_days())
    removed = await MetadataCache(max_age=max_age).evict_expired()
    return {"status": "evicted", "removed": removed}


@router.get("/search", response_model=list[SearchResultResponse])
async def search_series(title: str) -> list:
    """Search the metadata provider for a show by title."""
    from medialign.services.tmdb_client import create_metadata_provider

    if not title.strip():
        raise HTTPException(status_code=400, detail="Title must not be empty")

    try:
        provider = await create_metadata_provider()
        results = await provider.search_by_title(title.strip())
    except MediAlignError as e:
        raise _http_error(e) from e
    return [r.model_dump() for r in results]
