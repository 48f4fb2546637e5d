"""Domain-specific event broadcasting layer.

Provides semantic event methods that wrap WebSocket broadcasting,
improving code clarity and reducing coupling to WebSocket implementation.
"""

from medialign.api.websocket import ConnectionManager
from medialign.models import MediaFile


class EventBroadcaster:
    """Domain-specific WebSocket event broadcasting."""

    def __init__(self, ws_manager: ConnectionManager):
        self._ws = ws_manager

    # --- File Events ---

    async def broadcast_file_updated(self, media_file: MediaFile):
        """Broadcast the persisted state of a file."""
        await self._ws.broadcast_file_update(
            media_file.id,
            media_file.series_id,
            media_file.status.value,
            confidence=media_file.confidence,
            episode_id=media_file.episode_id,
            corrected_filename=media_file.corrected_filename,
            processing_step=media_file.processing_step.value,
            audio_extraction_status=media_file.audio_extraction_status.value,
            audio_extraction_progress=media_file.audio_extraction_progress,
            error=media_file.error_message,
        )

    # --- Series Run Events ---

    async def broadcast_series_progress(
        self,
        series_id: int,
        overall_progress: float,
        completed_files: int,
        total_files: int,
        file_id: int | None = None,
        file_progress: float | None = None,
    ):
        """Broadcast aggregate progress, optionally with the file that moved it."""
        await self._ws.broadcast_series_progress(
            series_id,
            round(overall_progress, 1),
            completed_files,
            total_files,
            file_id=file_id,
            file_progress=round(file_progress, 1) if file_progress is not None else None,
        )

    async def broadcast_series_completed(
        self,
        series_id: int,
        total_files: int,
        succeeded: int,
        failed: int,
        cancelled: bool = False,
    ):
        """Broadcast series run completion (including partial and all-failed runs)."""
        await self._ws.broadcast_series_completed(
            series_id, total_files, succeeded, failed, cancelled=cancelled
        )
