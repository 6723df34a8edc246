"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["NOTESYNC_DATABASE_PATH"] = ":memory:"
os.environ["NOTESYNC_ENCRYPTION_KEY_FILE"] = "/tmp/test_notesync_encryption.key"


@pytest.fixture(scope="function")
def test_encryption_key():
    """Create a temporary encryption key and install it globally."""
    from notesync.encryption import generate_encryption_key, init_encryption_manager
    import notesync.encryption as encryption_module

    key = generate_encryption_key()

    with tempfile.NamedTemporaryFile(mode="wb", delete=False, suffix=".key") as f:
        f.write(key)
        key_path = f.name

    init_encryption_manager(key)

    yield key

    encryption_module._encryption_manager = None
    if os.path.exists(key_path):
        os.remove(key_path)


@pytest_asyncio.fixture
async def test_db(test_encryption_key):
    """Create a fresh in-memory test database."""
    from notesync.database import close_database, get_database
    import notesync.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None


class FakeRecordStore:
    """In-memory record store."""

    def __init__(self, records=None, fields=None):
        from notesync.models import Record

        self.records: dict[str, Record] = {r.id: r for r in (records or [])}
        self.fields = list(fields or ["title", "due-date", "start-date", "end-date"])
        self.created: list[tuple[str, dict, Optional[str]]] = []
        self.updated: list[Any] = []
        self.deleted: list[str] = []
        self.fail_create = False

    async def create_record(self, record_id, fields, template=None):
        from notesync.models import Record

        if self.fail_create:
            raise OSError("disk full")
        record = Record(id=record_id, values=dict(fields))
        self.records[record_id] = record
        self.created.append((record_id, dict(fields), template))
        return record

    async def update_record(self, record):
        from notesync.store import RecordNotFoundError

        if record.id not in self.records:
            raise RecordNotFoundError(record.id)
        self.records[record.id] = record
        self.updated.append(record)

    async def delete_record(self, record_id):
        self.records.pop(record_id, None)
        self.deleted.append(record_id)

    async def current_record_set(self):
        from notesync.models import RecordSet

        return RecordSet(records=list(self.records.values()), fields=self.fields)


class FakeCalendarClient:
    """Remote client double recording every call."""

    def __init__(self, events=None):
        self.events: list[dict] = list(events or [])
        self.calls: list[tuple] = []
        self.errors: dict[str, Exception] = {}
        self._next_id = 0

    def _maybe_fail(self, operation: str) -> None:
        error = self.errors.get(operation)
        if error is not None:
            raise error

    async def list_events(self, calendar_id, time_min=None, time_max=None, max_results=None):
        self.calls.append(("list_events", calendar_id))
        self._maybe_fail("list_events")
        return list(self.events)

    async def get_event(self, calendar_id, event_id):
        self.calls.append(("get_event", calendar_id, event_id))
        self._maybe_fail("get_event")
        return next((e for e in self.events if e["id"] == event_id), None)

    async def create_event(self, calendar_id, event_data):
        self.calls.append(("create_event", calendar_id, event_data))
        self._maybe_fail("create_event")
        self._next_id += 1
        return {**event_data, "id": f"created-{self._next_id}"}

    async def update_event(self, calendar_id, event_id, event_data):
        self.calls.append(("update_event", calendar_id, event_id, event_data))
        self._maybe_fail("update_event")
        return {**event_data, "id": event_id}

    async def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete_event", calendar_id, event_id))
        self._maybe_fail("delete_event")
        return True

    def calls_named(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def record_store():
    return FakeRecordStore()


@pytest.fixture
def make_record_store():
    return FakeRecordStore


@pytest.fixture
def calendar_client():
    return FakeCalendarClient()


@pytest.fixture
def make_calendar_client():
    return FakeCalendarClient


@pytest.fixture
def sync_config():
    from notesync.config import CalendarSyncConfig

    return CalendarSyncConfig(
        enabled=True,
        client_id="client-id",
        client_secret="client-secret",
        access_token="access-1",
        refresh_token="refresh-1",
        calendar_id="primary",
    )


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
