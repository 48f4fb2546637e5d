"""Unit tests for EventBroadcaster.

Tests domain-specific event broadcasting abstraction layer.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from medialign.api.websocket import ConnectionManager
from medialign.models import ExtractionStatus, FileStatus, MediaFile, ProcessingStep
from medialign.services.event_broadcaster import EventBroadcaster


@pytest.fixture
def mock_ws_manager():
    """Create a mock WebSocket connection manager."""
    ws = MagicMock(spec=ConnectionManager)
    ws.broadcast_file_update = AsyncMock()
    ws.broadcast_series_progress = AsyncMock()
    ws.broadcast_series_completed = AsyncMock()
    return ws


@pytest.fixture
def event_broadcaster(mock_ws_manager):
    """Create an EventBroadcaster instance."""
    return EventBroadcaster(mock_ws_manager)


@pytest.fixture
def sample_file():
    """Create a sample file mid-analysis."""
    return MediaFile(
        id=10,
        series_id=1,
        original_path="/tv/Show/mystery.mkv",
        original_filename="mystery.mkv",
        status=FileStatus.EXTRACTING,
        processing_step=ProcessingStep.EXTRACTING_AUDIO,
        audio_extraction_status=ExtractionStatus.IN_PROGRESS,
        audio_extraction_progress=0,
    )


class TestFileEvents:
    async def test_file_updated(self, event_broadcaster, mock_ws_manager, sample_file):
        await event_broadcaster.broadcast_file_updated(sample_file)

        mock_ws_manager.broadcast_file_update.assert_awaited_once_with(
            10,
            1,
            "extracting",
            confidence=0.0,
            episode_id=None,
            corrected_filename=None,
            processing_step="extracting_audio",
            audio_extraction_status="in_progress",
            audio_extraction_progress=0,
            error=None,
        )


class TestSeriesEvents:
    async def test_progress_is_rounded(self, event_broadcaster, mock_ws_manager):
        await event_broadcaster.broadcast_series_progress(
            1, 33.3333, 1, 3, file_id=2, file_progress=66.666
        )

        mock_ws_manager.broadcast_series_progress.assert_awaited_once_with(
            1, 33.3, 1, 3, file_id=2, file_progress=66.7
        )

    async def test_progress_without_file(self, event_broadcaster, mock_ws_manager):
        await event_broadcaster.broadcast_series_progress(1, 100.0, 3, 3)

        mock_ws_manager.broadcast_series_progress.assert_awaited_once_with(
            1, 100.0, 3, 3, file_id=None, file_progress=None
        )

    async def test_completed(self, event_broadcaster, mock_ws_manager):
        await event_broadcaster.broadcast_series_completed(1, 3, 2, 1)

        mock_ws_manager.broadcast_series_completed.assert_awaited_once_with(
            1, 3, 2, 1, cancelled=False
        )
