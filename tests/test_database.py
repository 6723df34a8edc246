"""Tests for database module."""

import pytest

from notesync.config import CalendarSyncConfig
from notesync.database import (
    get_database,
    get_setting,
    get_sync_log,
    load_calendar_config,
    log_sync_result,
    save_calendar_config,
    set_setting,
)


@pytest.mark.asyncio
async def test_database_connection(test_db):
    """Test database connection."""
    db = await get_database()
    assert db is test_db

    cursor = await db.execute("SELECT 1")
    result = await cursor.fetchone()
    assert result[0] == 1


@pytest.mark.asyncio
async def test_schema_tables_exist(test_db):
    """Test that all required tables exist."""
    for table in ["settings", "sync_log"]:
        cursor = await test_db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table,)
        )
        result = await cursor.fetchone()
        assert result is not None, f"Table {table} does not exist"


@pytest.mark.asyncio
async def test_plain_and_sensitive_settings(test_db):
    await set_setting("plain", "visible")
    await set_setting("secret", "hidden", is_sensitive=True)

    plain = await get_setting("plain")
    secret = await get_setting("secret")

    assert plain["value_plain"] == "visible"
    assert plain["value_encrypted"] is None
    assert secret["value_plain"] is None
    assert secret["value_encrypted"] != b"hidden"
    assert await get_setting("missing") is None


@pytest.mark.asyncio
async def test_setting_can_switch_sensitivity(test_db):
    await set_setting("token", "abc", is_sensitive=True)
    await set_setting("token", "abc")

    row = await get_setting("token")
    assert row["value_plain"] == "abc"
    assert row["value_encrypted"] is None


@pytest.mark.asyncio
async def test_load_calendar_config_defaults(test_db):
    config = await load_calendar_config()
    assert config == CalendarSyncConfig()


@pytest.mark.asyncio
async def test_calendar_config_round_trip_encrypts_secrets(test_db):
    config = CalendarSyncConfig(
        enabled=True,
        client_id="client-id",
        client_secret="client-secret",
        access_token="access",
        refresh_token="refresh",
        calendar_id="primary",
        sync_interval=30,
        auto_sync=True,
    )

    await save_calendar_config(config)

    assert await load_calendar_config() == config

    for field in ["client_secret", "access_token", "refresh_token"]:
        row = await get_setting(f"calendar.{field}")
        assert row["is_sensitive"]
        assert row["value_plain"] is None

    row = await get_setting("calendar.client_id")
    assert row["value_plain"] == "client-id"


@pytest.mark.asyncio
async def test_saving_none_clears_previous_value(test_db):
    await save_calendar_config(CalendarSyncConfig(client_id="id", access_token="access"))
    await save_calendar_config(CalendarSyncConfig(client_id="id"))

    assert await get_setting("calendar.access_token") is None
    assert (await load_calendar_config()).access_token is None


@pytest.mark.asyncio
async def test_sync_log_pagination(test_db):
    for n in range(3):
        await log_sync_result("sync", "success", {"pushed": n})
    await log_sync_result("sync", "failure", {"error": "offline"})

    rows, total = await get_sync_log(limit=2)

    assert total == 4
    assert [row["status"] for row in rows] == ["failure", "success"]
    assert rows[0]["details"] == '{"error": "offline"}'

    rows, _ = await get_sync_log(limit=2, offset=2)
    assert [row["details"] for row in rows] == ['{"pushed": 1}', '{"pushed": 0}']
