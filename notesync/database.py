"""Database connection, schema and persistence of sync configuration."""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Optional

import aiosqlite

from notesync.config import CalendarSyncConfig, get_settings
from notesync.encryption import decrypt_value, encrypt_value

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()

CONFIG_KEY_PREFIX = "calendar."
SENSITIVE_CONFIG_FIELDS = frozenset({"client_secret", "access_token", "refresh_token"})


SCHEMA = """
-- Key/value settings, sensitive values encrypted
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value_encrypted BLOB,
    value_plain TEXT,
    is_sensitive BOOLEAN DEFAULT FALSE,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- One row per sync pass
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);
"""


async def get_database() -> aiosqlite.Connection:
    """Get or open the global database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            if settings.database_path != ":memory:":
                directory = os.path.dirname(settings.database_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


async def get_setting(key: str) -> Optional[dict]:
    """Get a setting row by key."""
    db = await get_database()
    cursor = await db.execute("SELECT * FROM settings WHERE key = ?", (key,))
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def set_setting(key: str, value: str, is_sensitive: bool = False) -> None:
    """Set a setting value, encrypting it when sensitive."""
    db = await get_database()
    now = datetime.utcnow().isoformat()

    if is_sensitive:
        await db.execute(
            """INSERT INTO settings (key, value_encrypted, value_plain, is_sensitive, updated_at)
               VALUES (?, ?, NULL, TRUE, ?)
               ON CONFLICT(key) DO UPDATE SET
               value_encrypted = excluded.value_encrypted,
               value_plain = NULL,
               is_sensitive = TRUE,
               updated_at = excluded.updated_at""",
            (key, encrypt_value(value), now)
        )
    else:
        await db.execute(
            """INSERT INTO settings (key, value_plain, value_encrypted, is_sensitive, updated_at)
               VALUES (?, ?, NULL, FALSE, ?)
               ON CONFLICT(key) DO UPDATE SET
               value_plain = excluded.value_plain,
               value_encrypted = NULL,
               is_sensitive = FALSE,
               updated_at = excluded.updated_at""",
            (key, value, now)
        )
    await db.commit()


async def delete_setting(key: str) -> None:
    db = await get_database()
    await db.execute("DELETE FROM settings WHERE key = ?", (key,))
    await db.commit()


def _setting_value(row: dict) -> Optional[str]:
    if row["is_sensitive"]:
        return decrypt_value(row["value_encrypted"]) if row["value_encrypted"] else None
    return row["value_plain"]


async def load_calendar_config() -> CalendarSyncConfig:
    """Load the persisted calendar sync config, defaults for anything unset."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM settings WHERE key LIKE ?", (f"{CONFIG_KEY_PREFIX}%",)
    )
    rows = await cursor.fetchall()

    values = {}
    for row in rows:
        field = row["key"][len(CONFIG_KEY_PREFIX):]
        if field in CalendarSyncConfig.model_fields:
            values[field] = _setting_value(dict(row))

    return CalendarSyncConfig.model_validate(
        {k: v for k, v in values.items() if v is not None}
    )


async def save_calendar_config(config: CalendarSyncConfig) -> None:
    """Persist every config field; secrets and tokens are encrypted."""
    for field, value in config.model_dump().items():
        key = f"{CONFIG_KEY_PREFIX}{field}"
        if value is None:
            await delete_setting(key)
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        await set_setting(key, str(value), is_sensitive=field in SENSITIVE_CONFIG_FIELDS)
    logger.debug("Calendar sync config saved")


async def log_sync_result(action: str, status: str, details: dict) -> None:
    """Append a sync pass outcome to the sync log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log (action, status, details)
           VALUES (?, ?, ?)""",
        (action, status, json.dumps(details, default=str))
    )
    await db.commit()


async def get_sync_log(limit: int = 50, offset: int = 0) -> tuple[list[dict], int]:
    """Return a page of sync log entries, newest first, plus the total count."""
    db = await get_database()

    cursor = await db.execute("SELECT COUNT(*) FROM sync_log")
    total = (await cursor.fetchone())[0]

    cursor = await db.execute(
        """SELECT * FROM sync_log
           ORDER BY created_at DESC, id DESC
           LIMIT ? OFFSET ?""",
        (limit, offset)
    )
    rows = await cursor.fetchall()
    return [dict(row) for row in rows], total
