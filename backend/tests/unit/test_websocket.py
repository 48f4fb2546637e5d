"""Unit tests for WebSocket connection manager.

Tests WebSocket lifecycle, message broadcasting, and error handling.
"""

import json
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocket

from medialign.api.websocket import ConnectionManager


@pytest.fixture
def connection_manager():
    """Create a fresh ConnectionManager instance."""
    return ConnectionManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock(spec=WebSocket)
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


def _sent(ws) -> dict:
    return json.loads(ws.send_text.call_args[0][0])


class TestConnectionLifecycle:
    """Test WebSocket connection lifecycle management."""

    async def test_connect_adds_client(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        assert mock_websocket in connection_manager.active_connections
        mock_websocket.accept.assert_called_once()

    async def test_disconnect_removes_client(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)
        await connection_manager.disconnect(mock_websocket)

        assert connection_manager.active_connections == []

    async def test_disconnect_unknown_is_noop(self, connection_manager, mock_websocket):
        await connection_manager.disconnect(mock_websocket)
        assert connection_manager.active_connections == []


class TestBroadcasting:
    """Test message broadcasting to clients."""

    async def test_broadcast_reaches_all_clients(self, connection_manager):
        clients = [AsyncMock(spec=WebSocket) for _ in range(3)]
        for ws in clients:
            await connection_manager.connect(ws)

        await connection_manager.broadcast({"type": "ping"})

        for ws in clients:
            ws.send_text.assert_called_once_with(json.dumps({"type": "ping"}))

    async def test_failed_client_is_dropped(self, connection_manager):
        healthy = AsyncMock(spec=WebSocket)
        broken = AsyncMock(spec=WebSocket)
        broken.send_text.side_effect = RuntimeError("connection reset")
        await connection_manager.connect(healthy)
        await connection_manager.connect(broken)

        await connection_manager.broadcast({"type": "ping"})

        assert connection_manager.active_connections == [healthy]
        healthy.send_text.assert_called_once()

    async def test_no_clients(self, connection_manager):
        await connection_manager.broadcast({"type": "ping"})


class TestMessageShapes:
    """Test the typed broadcast helpers."""

    async def test_file_update_omits_none_fields(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_file_update(
            5, 1, "incorrect", confidence=0.45, corrected_filename="S01E07 - Title.mkv"
        )

        assert _sent(mock_websocket) == {
            "type": "file_update",
            "file_id": 5,
            "series_id": 1,
            "status": "incorrect",
            "confidence": 0.45,
            "corrected_filename": "S01E07 - Title.mkv",
        }

    async def test_file_update_includes_error(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_file_update(5, 1, "error", error="ffmpeg died")

        assert _sent(mock_websocket)["error_message"] == "ffmpeg died"

    async def test_series_progress(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_series_progress(
            1, 42.5, 2, 5, file_id=3, file_progress=60.0
        )

        message = _sent(mock_websocket)
        assert message["type"] == "series_progress"
        assert message["overall_progress"] == 42.5
        assert message["completed_files"] == 2
        assert message["total_files"] == 5
        assert message["file_id"] == 3

    async def test_series_completed(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast_series_completed(1, 5, 4, 1, cancelled=True)

        assert _sent(mock_websocket) == {
            "type": "series_completed",
            "series_id": 1,
            "total_files": 5,
            "succeeded": 4,
            "failed": 1,
            "cancelled": True,
        }
