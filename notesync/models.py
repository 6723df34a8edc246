"""Data models shared by the mapper, the engine and the manager."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

# Sync metadata written onto records
FIELD_EVENT_ID = "remote-event-id"
FIELD_CALENDAR_ID = "remote-calendar-id"
FIELD_SYNC_ENABLED = "remote-sync-enabled"
FIELD_LAST_SYNC = "remote-last-sync"
FIELD_RECURRENCE = "remote-recurrence"
FIELD_RECURRING_EVENT_ID = "remote-recurring-event-id"
FIELD_IS_RECURRING = "remote-is-recurring"
FIELD_TIME_ZONE = "remote-time-zone"

# Timing fields
FIELD_DUE_DATE = "due-date"
FIELD_DUE = "due"
FIELD_START_DATE = "start-date"
FIELD_END_DATE = "end-date"
FIELD_START_TIME = "start-time"
FIELD_END_TIME = "end-time"

CALENDAR_EVENT_TAG = "calendar-event"


class Record(BaseModel):
    """A local note as seen through the record store."""

    id: str
    values: dict[str, Any] = Field(default_factory=dict)
    modified_at: Optional[datetime] = None

    def get(self, field: str, default: Any = None) -> Any:
        return self.values.get(field, default)

    def with_values(self, updates: dict[str, Any]) -> "Record":
        """Return a copy with ``updates`` merged over the current values."""
        return self.model_copy(update={"values": {**self.values, **updates}})


class RecordSet(BaseModel):
    """Snapshot of every record plus the field schema."""

    records: list[Record] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)


class SyncDirection(str, Enum):
    LOCAL_TO_REMOTE = "local-to-remote"
    REMOTE_TO_LOCAL = "remote-to-local"
    BIDIRECTIONAL = "bidirectional"


class EventMapping(BaseModel):
    """Tracks which remote event a record was last reconciled with."""

    record_id: str
    remote_event_id: str
    calendar_id: str
    last_synced_at: datetime
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL


class VirtualOccurrence(BaseModel):
    """One date instance of a recurring record. Never persisted."""

    occurrence_id: str
    base_event_id: str
    record: Record
    occurrence_date: date
    is_virtual: bool = True


# Host callbacks receive either a stored record or an occurrence of one.
RecordRef = Union[Record, VirtualOccurrence]


def is_virtual(ref: RecordRef) -> bool:
    return isinstance(ref, VirtualOccurrence)


def unwrap_record(ref: RecordRef) -> Record:
    """Return the stored record that owns ``ref``.

    Every mutation path goes through here so that edits to an occurrence
    land on its master record.
    """
    if isinstance(ref, VirtualOccurrence):
        return ref.record
    return ref


class ConflictType(str, Enum):
    DATETIME = "datetime"
    TITLE = "title"
    DESCRIPTION = "description"
    DELETED = "deleted"


class ConflictResolution(str, Enum):
    USE_LOCAL = "use-local"
    USE_REMOTE = "use-remote"
    MANUAL = "manual"


class SyncConflict(BaseModel):
    """Both sides changed since the last sync; nothing was written."""

    record_id: str
    remote_event_id: str
    conflict_type: ConflictType
    local_value: Any = None
    remote_value: Any = None
    suggested_resolution: ConflictResolution = ConflictResolution.MANUAL
    detected_at: datetime


class SyncStatus(BaseModel):
    active: bool = False
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    pending_conflict_count: int = 0


class SyncResult(BaseModel):
    pushed: int = 0
    pulled: int = 0
    conflicts: list[SyncConflict] = Field(default_factory=list)
    failed_records: int = 0
    failed_events: int = 0
    completed_at: Optional[datetime] = None
