"""Sync lifecycle: configuration, auto-sync scheduling and host callbacks."""

import logging
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notesync.config import CalendarSyncConfig, clamp_sync_interval
from notesync.engine import SyncEngine, is_sync_running
from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.google_calendar import GoogleCalendarClient
from notesync.mapping import is_calendar_event, parse_timestamp
from notesync.models import (
    ConflictResolution,
    RecordRef,
    RecordSet,
    SyncConflict,
    SyncResult,
    SyncStatus,
    is_virtual,
    unwrap_record,
)
from notesync.store import RecordStore

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB_ID = "calendar_auto_sync"

PersistConfig = Callable[[CalendarSyncConfig], Awaitable[None]]
RecordHistory = Callable[[str, str, dict], Awaitable[None]]


class SyncManager:
    """
    Owns the sync engine for one host.

    The host hands over an immutable config and a record store, and gets
    back manual sync, per-record hooks and an optional periodic sync job.
    Configuration changes go through ``update_config`` which rebuilds the
    engine from scratch.
    """

    def __init__(
        self,
        config: CalendarSyncConfig,
        record_store: RecordStore,
        persist_config: Optional[PersistConfig] = None,
        notify: Optional[Callable[[str], Any]] = None,
        record_history: Optional[RecordHistory] = None,
        client_factory=GoogleCalendarClient,
    ):
        self.record_store = record_store
        self._config = config
        self._persist_config = persist_config
        self._notify = notify
        self._record_history = record_history
        self._client_factory = client_factory

        self.engine: Optional[SyncEngine] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False
        self._status = SyncStatus(
            last_sync_at=parse_timestamp(config.last_sync) if config.last_sync else None
        )

        self._build_engine()

    @property
    def config(self) -> CalendarSyncConfig:
        return self._config

    @property
    def auto_sync_running(self) -> bool:
        return self._scheduler is not None

    def _build_engine(self) -> None:
        self.engine = None
        config = self._config

        if not config.enabled or not config.has_credentials():
            logger.info("Calendar sync is disabled or missing client credentials")
            return

        try:
            client = self._client_factory(config, on_token_refresh=self._on_token_refresh)
            self.engine = SyncEngine(client, self.record_store, config)
            logger.info("Calendar sync engine initialized")
        except Exception as e:
            logger.error(f"Failed to initialize calendar sync engine: {e}")
            self.engine = None

    async def update_config(self, config: CalendarSyncConfig) -> None:
        """Swap in a new configuration and rebuild the engine around it."""
        self._stop_auto_sync()
        self._config = config
        self._build_engine()

        if self._started:
            self._start_auto_sync()

    async def start(self) -> None:
        self._started = True
        self._start_auto_sync()

    async def close(self) -> None:
        self._started = False
        self._stop_auto_sync()

    async def __aenter__(self) -> "SyncManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _start_auto_sync(self) -> None:
        self._stop_auto_sync()

        if self.engine is None or not self._config.auto_sync:
            return

        interval = clamp_sync_interval(self._config.sync_interval)
        if interval != self._config.sync_interval:
            logger.warning(
                f"Invalid sync interval {self._config.sync_interval!r}, using {interval} minutes"
            )

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._auto_sync_tick,
            trigger=IntervalTrigger(minutes=interval),
            id=AUTO_SYNC_JOB_ID,
            name="Calendar Auto Sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Auto sync started, every {interval} minutes")

    def _stop_auto_sync(self) -> None:
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Auto sync stopped")

    async def _auto_sync_tick(self) -> None:
        if self.engine is None:
            return

        if is_sync_running():
            logger.debug("Sync already running, skipping auto sync")
            return

        try:
            await self.perform_sync()
        except CalendarSyncError as e:
            logger.warning(f"Auto sync failed: {e.message}")

    def _require_engine(self) -> SyncEngine:
        if self.engine is None or not self._config.calendar_id.strip():
            raise CalendarSyncError(
                SyncErrorType.INVALID_CONFIGURATION,
                "Calendar sync is not configured",
            )
        return self.engine

    async def perform_sync(self) -> SyncResult:
        """Run a full pass over the current record set."""
        engine = self._require_engine()

        if is_sync_running():
            raise CalendarSyncError(SyncErrorType.SYNC_IN_PROGRESS, "Sync already in progress")

        self._status = self._status.model_copy(update={"active": True})
        try:
            record_set = await self.record_store.current_record_set()
            result = await engine.perform_sync(self._config.calendar_id, record_set)
        except Exception as e:
            error = CalendarSyncError.from_error(e)
            if error.error_type == SyncErrorType.SYNC_IN_PROGRESS:
                # Lost the race to another pass, which is not a failed sync
                self._status = self._status.model_copy(update={"active": is_sync_running()})
                raise error
            self._status = self._status.model_copy(
                update={"active": False, "last_error": error.message}
            )
            await self._log_history("failure", {
                "error_type": error.error_type.value,
                "error": error.message,
            })
            raise error

        self._status = SyncStatus(
            active=False,
            last_sync_at=result.completed_at,
            last_error=None,
            pending_conflict_count=len(result.conflicts),
        )
        self._config = self._config.model_copy(
            update={"last_sync": result.completed_at.isoformat()}
        )
        engine.config = self._config
        await self._persist()

        await self._log_history("success", {
            "pushed": result.pushed,
            "pulled": result.pulled,
            "conflicts": len(result.conflicts),
            "failed_records": result.failed_records,
            "failed_events": result.failed_events,
        })
        return result

    async def perform_manual_sync(self) -> Optional[SyncResult]:
        """User-triggered sync. Reports through notices and never raises."""
        if self.engine is None or not self._config.calendar_id.strip():
            self._show_notice(
                "Google Calendar sync is not configured. Please check your settings."
            )
            return None

        self._show_notice("Starting Google Calendar sync...")

        try:
            result = await self.perform_sync()
        except CalendarSyncError as e:
            logger.error(f"Manual sync failed: {e.message}")
            self._show_notice(e.user_message("Google Calendar sync failed"))
            return None

        message = f"Sync completed: {result.pushed} to Google, {result.pulled} from Google"
        if result.conflicts:
            message += f", {len(result.conflicts)} conflicts need review"
        self._show_notice(message)
        return result

    async def sync_record(self, ref: RecordRef) -> Optional[SyncResult]:
        """Push one record (or the master of an occurrence)."""
        record = unwrap_record(ref)

        if self.engine is None or not is_calendar_event(record):
            return None

        engine = self._require_engine()
        record_set = await self.record_store.current_record_set()
        return await engine.perform_sync(
            self._config.calendar_id,
            RecordSet(records=[record], fields=record_set.fields),
            pull_remote=False,
        )

    async def on_record_update(self, ref: RecordRef) -> None:
        try:
            await self.sync_record(ref)
        except Exception as e:
            error = CalendarSyncError.from_error(e)
            logger.error(f"Failed to sync record {unwrap_record(ref).id}: {error.message}")
            self._show_notice(error.user_message("Failed to sync calendar event"))

    async def on_record_delete(self, ref: RecordRef) -> None:
        """Delete the remote event, then the owning record.

        Deleting an occurrence deletes its whole series. The local delete
        happens even when the remote one fails.
        """
        record = unwrap_record(ref)
        if is_virtual(ref):
            logger.info(f"Deleting occurrence of {record.id}, removing the master record")

        if self.engine is not None and is_calendar_event(record):
            try:
                if await self.engine.delete_remote_event(record):
                    self._show_notice("Calendar event deleted")
            except Exception as e:
                error = CalendarSyncError.from_error(e)
                logger.error(f"Failed to delete remote event for {record.id}: {error.message}")
                self._show_notice(error.user_message("Failed to delete calendar event"))

        try:
            await self.record_store.delete_record(record.id)
        except Exception as e:
            logger.error(f"Failed to delete record {record.id}: {e}")
            self._show_notice(f"Failed to delete note: {e}")

    async def resolve_conflict(self, conflict: SyncConflict, resolution: ConflictResolution) -> None:
        engine = self._require_engine()
        await engine.resolve_pending_conflict(conflict, resolution)
        self._status = self._status.model_copy(
            update={"pending_conflict_count": len(engine.conflicts)}
        )

    async def _on_token_refresh(self, access_token: str) -> None:
        self._config = self._config.model_copy(update={"access_token": access_token})
        if self.engine is not None:
            self.engine.config = self._config
        await self._persist()

    async def _persist(self) -> None:
        if self._persist_config is None:
            return
        try:
            await self._persist_config(self._config)
        except Exception as e:
            logger.error(f"Failed to persist calendar sync config: {e}")

    async def _log_history(self, status: str, details: dict) -> None:
        if self._record_history is None:
            return
        try:
            await self._record_history("sync", status, details)
        except Exception as e:
            logger.error(f"Failed to record sync history: {e}")

    def _show_notice(self, message: str) -> None:
        logger.info(message)
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception as e:
            logger.error(f"Notice callback failed: {e}")

    def get_sync_status(self) -> SyncStatus:
        if self.engine is None:
            return self._status.model_copy(update={"active": False})

        engine_status = self.engine.get_sync_status()
        return self._status.model_copy(update={
            "active": self._status.active or engine_status.active,
            "last_sync_at": engine_status.last_sync_at or self._status.last_sync_at,
            "pending_conflict_count": engine_status.pending_conflict_count,
        })

    def is_sync_available(self) -> bool:
        return self.engine is not None and self._config.is_configured()
