"""API module."""

from medialign.api.routes import router
from medialign.api.websocket import ConnectionManager, manager

__all__ = ["router", "ConnectionManager", "manager"]
