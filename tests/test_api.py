"""Tests for the HTTP surface."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.models import Record


@pytest.fixture
def build_client(make_record_store, make_calendar_client, sync_config):
    """Build a TestClient around a manager wired to the sync log."""
    from notesync.database import log_sync_result
    from notesync.main import create_app
    from notesync.manager import SyncManager

    def build(config=None, records=None, events=None):
        remote = make_calendar_client(events)
        manager = SyncManager(
            config or sync_config,
            make_record_store(records),
            record_history=log_sync_result,
            client_factory=lambda config, on_token_refresh=None: remote,
        )
        return TestClient(create_app(manager)), manager, remote

    return build


def test_health(build_client):
    client, _manager, _remote = build_client()

    with client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected", "sync_available": True}


def test_status_before_any_sync(build_client):
    client, _manager, _remote = build_client()

    with client:
        response = client.get("/sync/status")

    assert response.status_code == 200
    data = response.json()
    assert data["available"] is True
    assert data["active"] is False
    assert data["last_sync"] is None
    assert data["pending_conflicts"] == 0
    assert data["auto_sync"] is False


def test_run_sync_and_read_log(build_client):
    client, _manager, remote = build_client(
        records=[Record(id="Task.md", values={"title": "Task", "due-date": "2024-03-01"})]
    )

    with client:
        response = client.post("/sync/run")
        assert response.status_code == 200
        assert response.json()["pushed"] == 1
        assert response.json()["conflicts"] == 0

        status_data = client.get("/sync/status").json()
        assert status_data["last_sync"] is not None

        log = client.get("/sync/log", params={"page_size": 10}).json()

    assert len(remote.calls_named("create_event")) == 1
    assert log["total"] == 1
    assert log["page_size"] == 10
    assert log["entries"][0]["action"] == "sync"
    assert log["entries"][0]["status"] == "success"


@pytest.mark.parametrize(
    "error_type,status_code",
    [
        (SyncErrorType.SYNC_IN_PROGRESS, 409),
        (SyncErrorType.VALIDATION_ERROR, 400),
        (SyncErrorType.AUTHENTICATION_FAILED, 401),
        (SyncErrorType.API_QUOTA_EXCEEDED, 429),
        (SyncErrorType.NETWORK_ERROR, 503),
        (SyncErrorType.UNKNOWN_ERROR, 500),
    ],
)
def test_run_sync_error_status_codes(build_client, error_type, status_code):
    client, manager, _remote = build_client()
    manager.perform_sync = AsyncMock(side_effect=CalendarSyncError(error_type, "nope"))

    with client:
        response = client.post("/sync/run")

    assert response.status_code == status_code
    assert response.json()["detail"] == {"error_type": error_type.value, "message": "nope"}


def test_run_sync_when_not_configured(build_client, sync_config):
    client, _manager, remote = build_client(config=sync_config.model_copy(update={"enabled": False}))

    with client:
        response = client.post("/sync/run")
        status_data = client.get("/sync/status").json()

    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "INVALID_CONFIGURATION"
    assert status_data["available"] is False
    assert remote.calls == []


def test_conflicts_listing_and_resolution(build_client):
    record = Record(
        id="Standup.md",
        values={
            "title": "Standup (moved)",
            "due-date": "2024-01-02",
            "remote-event-id": "e1",
            "remote-calendar-id": "primary",
            "remote-last-sync": "2024-01-01T00:00:00+00:00",
        },
        modified_at="2024-01-03T00:00:00+00:00",
    )
    event = {
        "id": "e1",
        "summary": "Standup",
        "start": {"date": "2024-01-02"},
        "end": {"date": "2024-01-03"},
        "updated": "2024-01-02T10:00:00Z",
    }
    client, _manager, remote = build_client(records=[record], events=[event])

    with client:
        assert client.post("/sync/run").json()["conflicts"] == 1

        conflicts = client.get("/sync/conflicts").json()
        assert [c["record_id"] for c in conflicts] == ["Standup.md"]
        assert conflicts[0]["conflict_type"] == "title"

        missing = client.post(
            "/sync/conflicts/resolve", json={"record_id": "Other.md", "resolution": "use-local"}
        )
        assert missing.status_code == 404

        resolved = client.post(
            "/sync/conflicts/resolve", json={"record_id": "Standup.md", "resolution": "use-local"}
        )
        assert resolved.status_code == 200

        assert client.get("/sync/conflicts").json() == []
        assert client.get("/sync/status").json()["pending_conflicts"] == 0

    assert remote.calls_named("update_event")[0][2] == "e1"
