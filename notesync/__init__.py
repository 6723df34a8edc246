"""Two-way sync between note records and Google Calendar."""

from notesync.config import CalendarSyncConfig
from notesync.engine import SyncEngine
from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.manager import SyncManager
from notesync.models import Record, RecordSet, VirtualOccurrence
from notesync.store import RecordStore

__all__ = [
    "CalendarSyncConfig",
    "CalendarSyncError",
    "Record",
    "RecordSet",
    "RecordStore",
    "SyncEngine",
    "SyncErrorType",
    "SyncManager",
    "VirtualOccurrence",
]
