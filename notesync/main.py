"""FastAPI application exposing a sync manager."""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from notesync.api import router as sync_router
from notesync.config import get_encryption_key, get_settings
from notesync.database import (
    close_database,
    get_database,
    load_calendar_config,
    log_sync_result,
    save_calendar_config,
)
from notesync.encryption import init_encryption_manager
from notesync.manager import SyncManager
from notesync.store import RecordStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def init_encryption() -> None:
    """Initialize the encryption manager if a key file exists."""
    settings = get_settings()
    if not os.path.exists(settings.encryption_key_file):
        logger.warning(
            f"No encryption key at {settings.encryption_key_file}, secrets cannot be stored"
        )
        return
    init_encryption_manager(get_encryption_key())
    logger.info("Encryption manager initialized")


async def build_sync_manager(
    record_store: RecordStore,
    notify: Optional[Callable[[str], None]] = None,
) -> SyncManager:
    """Create a manager from the persisted config, wired to the database."""
    config = await load_calendar_config()
    return SyncManager(
        config,
        record_store,
        persist_config=save_calendar_config,
        notify=notify,
        record_history=log_sync_result,
    )


def create_app(manager: SyncManager) -> FastAPI:
    """Create the HTTP app around an already constructed sync manager."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        logger.info("Starting notesync...")
        logger.info(f"Database: {settings.database_path}")

        await get_database()
        try:
            init_encryption()
        except Exception as e:
            logger.warning(f"Could not initialize encryption: {e}")

        await manager.start()

        yield

        logger.info("Shutting down...")
        await manager.close()
        await close_database()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="notesync",
        description="Two-way sync between notes and Google Calendar",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sync_manager = manager
    app.include_router(sync_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        try:
            db = await get_database()
            await db.execute("SELECT 1")
            return {
                "status": "healthy",
                "database": "connected",
                "sync_available": manager.is_sync_available(),
            }
        except Exception as e:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "error": str(e)},
            )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return app
