"""FastAPI application entry point for MediAlign."""

import sys
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from medialign.api import manager as ws_manager
from medialign.api import router as api_router
from medialign.config import settings
from medialign.core.logging import setup_logging
from medialign.database import init_db
from medialign.services.series_scheduler import series_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("Starting MediAlign Backend...")

    await init_db()
    logger.info("Database initialized")

    from medialign.services.config_service import get_cache_max_age_days
    from medialign.services.metadata_cache import MetadataCache

    max_age = timedelta(days=await get_cache_max_age_days())
    removed = await MetadataCache(max_age=max_age).evict_expired()
    logger.info(f"Metadata cache ready ({removed} expired entries evicted)")

    yield

    # Shutdown
    logger.info("Shutting down MediAlign Backend...")
    await series_scheduler.stop()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="MediAlign API",
    description="Episode identification and renaming for local TV libraries",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],  # Vite dev server
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates."""
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep connection alive, handle any incoming messages
            data = await websocket.receive_text()
            logger.debug(f"Received WebSocket message: {data}")
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await ws_manager.disconnect(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    """Root endpoint - API status."""
    return {
        "name": "MediAlign",
        "version": "0.1.0",
        "status": "running",
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    try:
        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            # reload is incompatible with passing app object directly
            reload=False,
        )
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
