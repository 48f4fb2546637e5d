"""WebSocket connection manager for real-time updates."""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections for broadcasting updates."""

    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(f"Client connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info(f"Client disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        json_message = json.dumps(message)
        disconnected = []

        async with self._lock:
            for connection in self.active_connections:
                try:
                    await connection.send_text(json_message)
                except Exception as e:
                    logger.warning(f"Failed to send message: {e}")
                    disconnected.append(connection)

            # Clean up disconnected clients
            for conn in disconnected:
                self.active_connections.remove(conn)

    async def broadcast_file_update(
        self,
        file_id: int,
        series_id: int,
        status: str,
        confidence: float | None = None,
        episode_id: int | None = None,
        corrected_filename: str | None = None,
        processing_step: str | None = None,
        audio_extraction_status: str | None = None,
        audio_extraction_progress: int | None = None,
        error: str | None = None,
    ) -> None:
        """Broadcast a file status update.

        Only includes optional fields when they are not None, so a client
        merging ({...file, ...message}) won't overwrite existing values with
        nulls.
        """
        data: dict = {
            "type": "file_update",
            "file_id": file_id,
            "series_id": series_id,
            "status": status,
        }
        if confidence is not None:
            data["confidence"] = confidence
        if episode_id is not None:
            data["episode_id"] = episode_id
        if corrected_filename is not None:
            data["corrected_filename"] = corrected_filename
        if processing_step is not None:
            data["processing_step"] = processing_step
        if audio_extraction_status is not None:
            data["audio_extraction_status"] = audio_extraction_status
        if audio_extraction_progress is not None:
            data["audio_extraction_progress"] = audio_extraction_progress
        if error is not None:
            data["error_message"] = error
        await self.broadcast(data)

    async def broadcast_series_progress(
        self,
        series_id: int,
        overall_progress: float,
        completed_files: int,
        total_files: int,
        file_id: int | None = None,
        file_progress: float | None = None,
    ) -> None:
        """Broadcast aggregate progress of a series run."""
        data: dict = {
            "type": "series_progress",
            "series_id": series_id,
            "overall_progress": overall_progress,
            "completed_files": completed_files,
            "total_files": total_files,
        }
        if file_id is not None:
            data["file_id"] = file_id
        if file_progress is not None:
            data["file_progress"] = file_progress
        await self.broadcast(data)

    async def broadcast_series_completed(
        self,
        series_id: int,
        total_files: int,
        succeeded: int,
        failed: int,
        cancelled: bool = False,
    ) -> None:
        """Broadcast the end of a series run."""
        await self.broadcast(
            {
                "type": "series_completed",
                "series_id": series_id,
                "total_files": total_files,
                "succeeded": succeeded,
                "failed": failed,
                "cancelled": cancelled,
            }
        )


# Singleton instance
manager = ConnectionManager()
