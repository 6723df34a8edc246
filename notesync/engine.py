"""Core sync engine."""

import asyncio
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from dateutil.relativedelta import relativedelta

from notesync.config import CalendarSyncConfig, get_settings
from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.mapping import (
    create_event_mapping,
    extract_sync_metadata,
    is_calendar_event,
    is_record_modified,
    parse_timestamp,
    resolve_conflict,
    should_sync,
    to_record_fields,
    to_remote_event,
    utc_now,
)
from notesync.models import (
    FIELD_CALENDAR_ID,
    FIELD_DUE_DATE,
    FIELD_END_DATE,
    FIELD_EVENT_ID,
    FIELD_LAST_SYNC,
    FIELD_START_DATE,
    FIELD_SYNC_ENABLED,
    ConflictResolution,
    ConflictType,
    EventMapping,
    Record,
    RecordSet,
    SyncConflict,
    SyncDirection,
    SyncResult,
    SyncStatus,
)
from notesync.recurrence import coerce_datetime
from notesync.store import RecordStore

logger = logging.getLogger(__name__)

# Single writer: periodic, manual and per-record passes all share this lock.
_sync_lock = asyncio.Lock()

INVALID_NAME_CHARS = re.compile(r'[\\/:*?"<>|]')


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


def is_sync_running() -> bool:
    """Whether any engine in this process is mid-pass."""
    return _sync_lock.locked()


def sanitize_title(title: Optional[str]) -> str:
    """Make an event title safe to use as a note file name."""
    placeholder = get_settings().untitled_event_title
    cleaned = INVALID_NAME_CHARS.sub("-", (title or "").strip()).strip()
    return cleaned or placeholder


def record_name_for_event(event: dict) -> str:
    """
    Deterministic record id for a note synthesized from a remote event.

    One-off events are named by title, date and short id; recurring events
    by title and short master id, so every occurrence maps to one note.
    """
    settings = get_settings()
    title = sanitize_title(event.get("summary"))

    if event.get("recurrence") or event.get("recurringEventId"):
        master_id = event.get("recurringEventId") or event["id"]
        name = f"{title} - recurring-{master_id[:8]}"
    else:
        start = event.get("start") or {}
        event_date = coerce_datetime(start.get("dateTime") or start.get("date")).date()
        name = f"{title} - {event_date.isoformat()} - {event['id'][:8]}"

    return f"{name}{settings.record_extension}"


def group_events_by_master(events: list[dict]) -> dict[str, dict]:
    """Collapse events onto their master id, preferring the copy with RRULEs."""
    grouped: dict[str, dict] = {}
    for event in events:
        master_id = event.get("recurringEventId") or event.get("id")
        if not master_id:
            continue
        existing = grouped.get(master_id)
        if existing is None or (event.get("recurrence") and not existing.get("recurrence")):
            grouped[master_id] = event
    return grouped


def _comparable(value: Any) -> Any:
    if not value:
        return None
    try:
        return parse_timestamp(coerce_datetime(value))
    except (TypeError, ValueError):
        return str(value)


class SyncEngine:
    """Bidirectional reconciliation between the record store and one calendar."""

    def __init__(self, client, record_store: RecordStore, config: CalendarSyncConfig):
        self.client = client
        self.record_store = record_store
        self.config = config
        self.settings = get_settings()
        self.state = SyncState.IDLE
        self.mappings: dict[str, EventMapping] = {}
        self.conflicts: list[SyncConflict] = []
        self.last_sync_at: Optional[datetime] = (
            parse_timestamp(config.last_sync) if config.last_sync else None
        )
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == SyncState.RUNNING

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            active=self.is_running,
            last_sync_at=self.last_sync_at,
            last_error=self.last_error,
            pending_conflict_count=len(self.conflicts),
        )

    def default_date_range(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        now = now or utc_now()
        return (
            now - relativedelta(months=self.settings.sync_window_past_months),
            now + relativedelta(months=self.settings.sync_window_future_months),
        )

    async def perform_sync(
        self,
        calendar_id: str,
        record_set: RecordSet,
        date_range: Optional[tuple[Any, Any]] = None,
        pull_remote: bool = True,
    ) -> SyncResult:
        """
        Run one bidirectional sync pass.

        Records are pushed first, then remote events are pulled. Failures of
        individual records or events are logged and counted without aborting
        the pass; authentication failures and setup failures abort it.

        Args:
            calendar_id: Remote calendar to reconcile with
            record_set: Current snapshot of the record store
            date_range: Optional (start, end) for fetching remote events
            pull_remote: False for a partial record set, which cannot tell
                which remote events already have notes

        Returns:
            Counts of pushed records, pulled events and detected conflicts
        """
        if not isinstance(calendar_id, str) or not calendar_id.strip():
            raise self._setup_failed(CalendarSyncError(
                SyncErrorType.INVALID_CONFIGURATION,
                "Calendar ID is required for sync",
            ))

        if not isinstance(record_set, RecordSet) or not all(
            isinstance(record, Record) for record in record_set.records
        ):
            raise self._setup_failed(CalendarSyncError(
                SyncErrorType.VALIDATION_ERROR,
                "Invalid record set provided for sync",
            ))

        if _sync_lock.locked():
            raise CalendarSyncError(SyncErrorType.SYNC_IN_PROGRESS, "Sync already in progress")

        async with _sync_lock:
            self.state = SyncState.RUNNING
            previous_conflicts = self.conflicts
            self.conflicts = []
            handled: set[str] = set()
            result = SyncResult()

            try:
                if date_range:
                    time_min, time_max = (coerce_datetime(bound) for bound in date_range)
                else:
                    time_min, time_max = self.default_date_range()

                remote_events = await self.client.list_events(calendar_id, time_min, time_max)
                remote_by_master = group_events_by_master(remote_events)
                calendar_records = [r for r in record_set.records if is_calendar_event(r)]

                logger.info(
                    f"Syncing {len(calendar_records)} records with {len(remote_by_master)} "
                    f"remote events on calendar {calendar_id}"
                )

                handled = await self._push_local_records(
                    calendar_id, calendar_records, remote_by_master, result
                )
                if pull_remote:
                    await self._pull_remote_events(
                        calendar_id, remote_by_master, record_set.records, handled, result
                    )

            except Exception as e:
                # A broken pass cannot vouch for conflicts it never revisited
                self._keep_untouched_conflicts(previous_conflicts, handled)
                error = CalendarSyncError.from_error(e)
                self.state = SyncState.FAILED
                self.last_error = error.message
                logger.error(f"Sync failed for calendar {calendar_id}: {error.message}")
                raise error

            result.conflicts = list(self.conflicts)
            if not pull_remote:
                # Only a full pass sees every record; keep the rest pending
                self._keep_untouched_conflicts(previous_conflicts, handled)

            completed_at = utc_now()
            self.last_sync_at = completed_at
            self.last_error = None
            self.state = SyncState.IDLE
            result.completed_at = completed_at

            logger.info(
                f"Sync completed for calendar {calendar_id}: {result.pushed} pushed, "
                f"{result.pulled} pulled, {len(result.conflicts)} conflicts, "
                f"{result.failed_records + result.failed_events} failed"
            )
            return result

    async def _push_local_records(
        self,
        calendar_id: str,
        records: list[Record],
        remote_by_master: dict[str, dict],
        result: SyncResult,
    ) -> set[str]:
        """Push new and modified records; return ids the pull must leave alone."""
        handled: set[str] = set()

        for record in records:
            if not should_sync(record):
                continue

            try:
                metadata = extract_sync_metadata(record)

                if metadata.event_id:
                    if not is_record_modified(record):
                        continue

                    conflict = self._detect_conflict(record, remote_by_master.get(metadata.event_id))
                    if conflict:
                        logger.warning(f"Conflict on record {record.id}, leaving both sides untouched")
                        self.conflicts.append(conflict)
                        handled.add(record.id)
                        continue

                    event_id = await self._update_or_recreate(calendar_id, metadata.event_id, record)
                else:
                    created = await self.client.create_event(calendar_id, to_remote_event(record))
                    event_id = created["id"]

                await self._write_sync_metadata(record, event_id, calendar_id)
                self.mappings[record.id] = create_event_mapping(
                    record.id, event_id, calendar_id, SyncDirection.LOCAL_TO_REMOTE
                )
                handled.add(record.id)
                result.pushed += 1

            except CalendarSyncError as e:
                if e.is_fatal:
                    raise
                logger.error(f"Error syncing record {record.id} to calendar: {e.message}")
                result.failed_records += 1
            except Exception as e:
                logger.error(f"Error syncing record {record.id} to calendar: {e}")
                result.failed_records += 1

        return handled

    async def _pull_remote_events(
        self,
        calendar_id: str,
        remote_by_master: dict[str, dict],
        records: list[Record],
        handled: set[str],
        result: SyncResult,
    ) -> None:
        records_by_event_id = {
            r.values[FIELD_EVENT_ID]: r for r in records if r.values.get(FIELD_EVENT_ID)
        }
        # Also index by id to avoid creating a second note under a taken name
        records_by_id = {r.id: r for r in records}

        for master_id, event in remote_by_master.items():
            try:
                existing = records_by_event_id.get(master_id)

                if event.get("status") == "cancelled":
                    if existing and existing.values.get(FIELD_SYNC_ENABLED) is not False:
                        self.conflicts.append(self._build_deleted_conflict(existing, event))
                    continue

                if existing:
                    if existing.id in handled or existing.values.get(FIELD_SYNC_ENABLED) is False:
                        continue

                    last_sync = parse_timestamp(existing.values.get(FIELD_LAST_SYNC))
                    updated = event.get("updated")
                    remote_modified = parse_timestamp(updated) if updated else utc_now()
                    if remote_modified <= last_sync:
                        continue

                    if existing.modified_at is not None and is_record_modified(existing):
                        self.conflicts.append(self._build_conflict(existing, event))
                        continue

                    await self._update_record_from_event(existing, event, calendar_id)
                    result.pulled += 1
                else:
                    name = record_name_for_event(event)
                    if name in records_by_id:
                        logger.info(f"Skipping duplicate note creation for event {event.get('id')}: {name}")
                        continue

                    created = await self._create_record_from_event(event, calendar_id, name)
                    records_by_id[created.id] = created
                    result.pulled += 1

            except CalendarSyncError as e:
                if e.is_fatal:
                    raise
                logger.error(f"Error syncing event {event.get('id')} to notes: {e.message}")
                result.failed_events += 1
            except Exception as e:
                logger.error(f"Error syncing event {event.get('id')} to notes: {e}")
                result.failed_events += 1

    async def _update_or_recreate(self, calendar_id: str, event_id: str, record: Record) -> str:
        """Update the remote event; if it vanished remotely, create it again."""
        body = to_remote_event(record)
        try:
            await self.client.update_event(calendar_id, event_id, body)
            return event_id
        except CalendarSyncError as e:
            if e.error_type != SyncErrorType.EVENT_NOT_FOUND:
                raise

        logger.warning(f"Remote event {event_id} for record {record.id} is gone, re-creating it")
        created = await self.client.create_event(calendar_id, body)
        return created["id"]

    async def _create_record_from_event(self, event: dict, calendar_id: str, name: str) -> Record:
        if not event.get("id"):
            raise CalendarSyncError(
                SyncErrorType.VALIDATION_ERROR,
                "Invalid calendar event: missing ID",
            )

        fields = to_record_fields(event)
        fields[FIELD_CALENDAR_ID] = calendar_id

        try:
            record = await self.record_store.create_record(
                name, fields, self.settings.event_template_path
            )
        except Exception as e:
            raise CalendarSyncError(
                SyncErrorType.UNKNOWN_ERROR,
                f"Failed to create note for calendar event: {e}",
                e,
            )

        self.mappings[record.id] = create_event_mapping(
            record.id, fields[FIELD_EVENT_ID], calendar_id, SyncDirection.REMOTE_TO_LOCAL
        )
        logger.debug(f"Created note {record.id} for event {event['id']}")
        return record

    async def _update_record_from_event(self, record: Record, event: dict, calendar_id: str) -> None:
        fields = to_record_fields(event)
        fields[FIELD_CALENDAR_ID] = calendar_id

        # Mapped fields win; everything else on the note is preserved
        await self.record_store.update_record(record.with_values(fields))
        self.mappings[record.id] = create_event_mapping(
            record.id, fields[FIELD_EVENT_ID], calendar_id, SyncDirection.REMOTE_TO_LOCAL
        )

    async def _write_sync_metadata(self, record: Record, event_id: str, calendar_id: str) -> None:
        await self.record_store.update_record(
            record.with_values({
                FIELD_EVENT_ID: event_id,
                FIELD_CALENDAR_ID: calendar_id,
                FIELD_SYNC_ENABLED: True,
                FIELD_LAST_SYNC: utc_now().isoformat(),
            })
        )

    def _detect_conflict(self, record: Record, event: Optional[dict]) -> Optional[SyncConflict]:
        """Both sides changed since the last sync; only knowable with host mtimes."""
        if event is None or record.modified_at is None:
            return None

        last_sync = parse_timestamp(record.values.get(FIELD_LAST_SYNC))
        if parse_timestamp(event.get("updated")) <= last_sync:
            return None

        return self._build_conflict(record, event)

    def _build_conflict(self, record: Record, event: dict) -> SyncConflict:
        values = record.values
        remote = to_record_fields(event)
        local_title = values.get("title") or values.get("name")

        conflict_type = ConflictType.DATETIME
        local_value: Any = values.get(FIELD_START_DATE) or values.get(FIELD_DUE_DATE)
        remote_value: Any = remote.get(FIELD_START_DATE) or remote.get(FIELD_DUE_DATE)

        dates_match = all(
            _comparable(values.get(field)) == _comparable(remote.get(field))
            for field in (FIELD_START_DATE, FIELD_END_DATE, FIELD_DUE_DATE)
        )
        if dates_match:
            if local_title != event.get("summary"):
                conflict_type = ConflictType.TITLE
                local_value, remote_value = local_title, event.get("summary")
            elif values.get("description") != event.get("description"):
                conflict_type = ConflictType.DESCRIPTION
                local_value, remote_value = values.get("description"), event.get("description")

        return SyncConflict(
            record_id=record.id,
            remote_event_id=remote[FIELD_EVENT_ID],
            conflict_type=conflict_type,
            local_value=local_value,
            remote_value=remote_value,
            suggested_resolution=resolve_conflict(record.modified_at, event.get("updated")),
            detected_at=utc_now(),
        )

    def _build_deleted_conflict(self, record: Record, event: dict) -> SyncConflict:
        return SyncConflict(
            record_id=record.id,
            remote_event_id=event.get("recurringEventId") or event["id"],
            conflict_type=ConflictType.DELETED,
            local_value=record.values.get("title") or record.values.get("name") or record.id,
            remote_value=None,
            suggested_resolution=ConflictResolution.MANUAL,
            detected_at=utc_now(),
        )

    async def resolve_pending_conflict(
        self,
        conflict: SyncConflict,
        resolution: ConflictResolution,
    ) -> None:
        """Apply a user's choice for a flagged conflict."""
        if resolution == ConflictResolution.MANUAL:
            raise CalendarSyncError(
                SyncErrorType.VALIDATION_ERROR,
                "Choose the local or the remote version to resolve a conflict",
            )

        if _sync_lock.locked():
            raise CalendarSyncError(SyncErrorType.SYNC_IN_PROGRESS, "Sync already in progress")

        async with _sync_lock:
            record_set = await self.record_store.current_record_set()
            record = next((r for r in record_set.records if r.id == conflict.record_id), None)
            if record is None:
                self._drop_conflict(conflict)
                raise CalendarSyncError(
                    SyncErrorType.VALIDATION_ERROR,
                    f"Record {conflict.record_id} no longer exists",
                )

            calendar_id = record.values.get(FIELD_CALENDAR_ID) or self.config.calendar_id

            if resolution == ConflictResolution.USE_LOCAL:
                event_id = await self._update_or_recreate(calendar_id, conflict.remote_event_id, record)
                await self._write_sync_metadata(record, event_id, calendar_id)
                self.mappings[record.id] = create_event_mapping(
                    record.id, event_id, calendar_id, SyncDirection.LOCAL_TO_REMOTE
                )
            else:
                event = await self.client.get_event(calendar_id, conflict.remote_event_id)
                if event is None or event.get("status") == "cancelled":
                    await self.record_store.delete_record(record.id)
                    self.mappings.pop(record.id, None)
                else:
                    if conflict.conflict_type == ConflictType.TITLE and event.get("summary"):
                        record = record.with_values({"title": event["summary"]})
                    await self._update_record_from_event(record, event, calendar_id)

            self._drop_conflict(conflict)
            logger.info(f"Resolved conflict for {conflict.record_id}: {resolution.value}")

    def _keep_untouched_conflicts(self, previous: list[SyncConflict], handled: set[str]) -> None:
        revisited = handled | {c.record_id for c in self.conflicts}
        self.conflicts = [c for c in previous if c.record_id not in revisited] + self.conflicts

    def _setup_failed(self, error: CalendarSyncError) -> CalendarSyncError:
        if not self.is_running:
            self.state = SyncState.FAILED
            self.last_error = error.message
        logger.error(f"Sync could not start: {error.message}")
        return error

    def _drop_conflict(self, conflict: SyncConflict) -> None:
        self.conflicts = [c for c in self.conflicts if c.record_id != conflict.record_id]

    async def delete_remote_event(self, record: Record) -> bool:
        """Delete the remote counterpart of a record. Returns False if it has none."""
        metadata = extract_sync_metadata(record)

        if not metadata.event_id or not metadata.calendar_id:
            return False

        await self.client.delete_event(metadata.calendar_id, metadata.event_id)
        self.mappings.pop(record.id, None)
        logger.info(f"Deleted remote event {metadata.event_id} for record {record.id}")
        return True
