"""Sync status and control API endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from notesync.database import get_sync_log
from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.manager import SyncManager
from notesync.models import ConflictResolution, SyncConflict

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])

ERROR_STATUS_CODES = {
    SyncErrorType.SYNC_IN_PROGRESS: status.HTTP_409_CONFLICT,
    SyncErrorType.INVALID_CONFIGURATION: status.HTTP_400_BAD_REQUEST,
    SyncErrorType.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    SyncErrorType.AUTHENTICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    SyncErrorType.AUTHORIZATION_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    SyncErrorType.TOKEN_REFRESH_FAILED: status.HTTP_401_UNAUTHORIZED,
    SyncErrorType.API_QUOTA_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    SyncErrorType.NETWORK_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    SyncErrorType.CALENDAR_NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


class SyncStatusResponse(BaseModel):
    """Current sync status."""
    available: bool
    active: bool
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_conflicts: int = 0
    auto_sync: bool = False


class SyncRunResponse(BaseModel):
    """Outcome of a sync pass."""
    pushed: int
    pulled: int
    conflicts: int
    failed_records: int
    failed_events: int
    completed_at: Optional[datetime] = None


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    action: str
    status: str
    details: Optional[str] = None
    created_at: str


class SyncLogResponse(BaseModel):
    """Sync log response."""
    entries: list[SyncLogEntry]
    total: int
    page: int
    page_size: int


class ResolveConflictRequest(BaseModel):
    record_id: str
    resolution: ConflictResolution


def get_sync_manager(request: Request) -> SyncManager:
    manager = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync manager not initialized",
        )
    return manager


def to_http_exception(error: CalendarSyncError) -> HTTPException:
    status_code = ERROR_STATUS_CODES.get(
        error.error_type, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    return HTTPException(
        status_code=status_code,
        detail={"error_type": error.error_type.value, "message": error.message},
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(manager: SyncManager = Depends(get_sync_manager)):
    """Get the current sync status."""
    sync_status = manager.get_sync_status()
    return SyncStatusResponse(
        available=manager.is_sync_available(),
        active=sync_status.active,
        last_sync=sync_status.last_sync_at,
        last_error=sync_status.last_error,
        pending_conflicts=sync_status.pending_conflict_count,
        auto_sync=manager.auto_sync_running,
    )


@router.post("/run", response_model=SyncRunResponse)
async def run_sync(manager: SyncManager = Depends(get_sync_manager)):
    """Run a full sync pass now."""
    try:
        result = await manager.perform_sync()
    except CalendarSyncError as e:
        logger.warning(f"Sync request failed: {e.error_type.value}: {e.message}")
        raise to_http_exception(e)

    return SyncRunResponse(
        pushed=result.pushed,
        pulled=result.pulled,
        conflicts=len(result.conflicts),
        failed_records=result.failed_records,
        failed_events=result.failed_events,
        completed_at=result.completed_at,
    )


@router.get("/conflicts", response_model=list[SyncConflict])
async def list_conflicts(manager: SyncManager = Depends(get_sync_manager)):
    """List conflicts flagged by the last sync pass."""
    if manager.engine is None:
        return []
    return manager.engine.conflicts


@router.post("/conflicts/resolve")
async def resolve_conflict(
    body: ResolveConflictRequest,
    manager: SyncManager = Depends(get_sync_manager),
):
    """Resolve a flagged conflict by keeping the local or the remote side."""
    conflicts = manager.engine.conflicts if manager.engine else []
    conflict = next((c for c in conflicts if c.record_id == body.record_id), None)
    if conflict is None:
        raise HTTPException(status_code=404, detail="Conflict not found")

    try:
        await manager.resolve_conflict(conflict, body.resolution)
    except CalendarSyncError as e:
        raise to_http_exception(e)

    return {"status": "ok", "record_id": body.record_id, "resolution": body.resolution.value}


@router.get("/log", response_model=SyncLogResponse)
async def get_log(page: int = 1, page_size: int = 50):
    """Get the sync activity log, newest first."""
    page = max(page, 1)
    page_size = min(max(page_size, 1), 200)

    rows, total = await get_sync_log(limit=page_size, offset=(page - 1) * page_size)

    entries = [
        SyncLogEntry(
            id=row["id"],
            action=row["action"],
            status=row["status"],
            details=row["details"],
            created_at=str(row["created_at"]),
        )
        for row in rows
    ]

    return SyncLogResponse(
        entries=entries,
        total=total,
        page=page,
        page_size=page_size,
    )
