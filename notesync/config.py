"""Application configuration management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings

DEFAULT_SYNC_INTERVAL_MINUTES = 15
MIN_SYNC_INTERVAL_MINUTES = 1
MAX_SYNC_INTERVAL_MINUTES = 1440


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    # Database
    database_path: str = "./data/notesync.db"

    # Encryption
    encryption_key_file: str = "./secrets/encryption.key"

    # Logging
    log_level: str = "info"

    # OAuth
    default_redirect_uri: str = "http://localhost:8080/auth/callback"

    # Notes created from calendar events
    event_template_path: str = "Templates/Calendar/Event-Note.md"
    record_extension: str = ".md"
    untitled_event_title: str = "Untitled Event"

    # Google Calendar
    default_time_zone: str = "UTC"
    list_page_size: int = 250
    sync_window_past_months: int = 1
    sync_window_future_months: int = 3
    default_sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES

    class Config:
        env_prefix = "NOTESYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class CalendarSyncConfig(BaseModel):
    """Host-owned calendar sync configuration.

    Instances are treated as immutable: changes are made with
    ``model_copy(update=...)`` and handed to the sync manager as a whole.
    """

    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    calendar_id: str = ""
    last_sync: Optional[str] = None
    sync_interval: int = DEFAULT_SYNC_INTERVAL_MINUTES
    auto_sync: bool = False

    def has_credentials(self) -> bool:
        return bool(self.client_id.strip() and self.client_secret.strip())

    def is_configured(self) -> bool:
        return self.has_credentials() and bool(self.calendar_id.strip())


def validate_calendar_config(config: CalendarSyncConfig) -> list[str]:
    """Return human-readable problems with a calendar sync configuration."""
    errors: list[str] = []

    if not config.client_id.strip():
        errors.append("Client ID is required")

    if not config.client_secret.strip():
        errors.append("Client Secret is required")

    if config.enabled and not config.calendar_id.strip():
        errors.append("Calendar ID is required when sync is enabled")

    if config.sync_interval and not (
        MIN_SYNC_INTERVAL_MINUTES <= config.sync_interval <= MAX_SYNC_INTERVAL_MINUTES
    ):
        errors.append(
            f"Sync interval must be between {MIN_SYNC_INTERVAL_MINUTES} "
            f"and {MAX_SYNC_INTERVAL_MINUTES} minutes"
        )

    return errors


def clamp_sync_interval(value) -> int:
    """Normalize an auto-sync interval in minutes.

    Out-of-range or non-numeric values fall back to the default rather than
    being clamped to the nearest bound.
    """
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SYNC_INTERVAL_MINUTES

    if minutes < MIN_SYNC_INTERVAL_MINUTES or minutes > MAX_SYNC_INTERVAL_MINUTES:
        return DEFAULT_SYNC_INTERVAL_MINUTES

    return minutes


def get_encryption_key() -> bytes:
    """Load the secrets encryption key from file."""
    key_file = get_settings().encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines that text editors might add
        while key and key[-1:] in (b"\n", b"\r"):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key
