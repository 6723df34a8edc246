"""Tests for configuration and error helpers."""

from types import SimpleNamespace

import pytest

from notesync import config as config_module
from notesync.config import CalendarSyncConfig, clamp_sync_interval, validate_calendar_config
from notesync.errors import CalendarSyncError, SyncErrorType


@pytest.mark.parametrize(
    "value,expected",
    [(1, 1), (30, 30), (1440, 1440), ("45", 45), (0, 15), (-5, 15), (1441, 15), (None, 15), ("soon", 15)],
)
def test_clamp_sync_interval(value, expected):
    assert clamp_sync_interval(value) == expected


def test_validate_calendar_config():
    assert validate_calendar_config(CalendarSyncConfig(client_id="id", client_secret="s")) == []

    errors = validate_calendar_config(CalendarSyncConfig(enabled=True, sync_interval=2000))
    assert errors == [
        "Client ID is required",
        "Client Secret is required",
        "Calendar ID is required when sync is enabled",
        "Sync interval must be between 1 and 1440 minutes",
    ]


def test_is_configured_requires_calendar():
    config = CalendarSyncConfig(client_id="id", client_secret="s")
    assert config.has_credentials()
    assert not config.is_configured()
    assert config.model_copy(update={"calendar_id": "primary"}).is_configured()


def test_get_encryption_key_strips_trailing_newlines(tmp_path, monkeypatch):
    key_file = tmp_path / "encryption.key"
    key_file.write_bytes(b"k" * 32 + b"\r\n")
    monkeypatch.setattr(config_module, "get_settings", lambda: SimpleNamespace(encryption_key_file=str(key_file)))

    assert config_module.get_encryption_key() == b"k" * 32


def test_get_encryption_key_errors(tmp_path, monkeypatch):
    key_file = tmp_path / "encryption.key"
    monkeypatch.setattr(config_module, "get_settings", lambda: SimpleNamespace(encryption_key_file=str(key_file)))

    with pytest.raises(RuntimeError, match="not found"):
        config_module.get_encryption_key()

    key_file.write_bytes(b"short")
    with pytest.raises(RuntimeError, match="at least 32 bytes"):
        config_module.get_encryption_key()


def test_from_error_passes_normalized_errors_through():
    original = CalendarSyncError(SyncErrorType.API_QUOTA_EXCEEDED, "quota")
    assert CalendarSyncError.from_error(original) is original

    wrapped = CalendarSyncError.from_error(KeyError("id"))
    assert wrapped.error_type == SyncErrorType.UNKNOWN_ERROR
    assert isinstance(wrapped.original_error, KeyError)


@pytest.mark.parametrize(
    "error_type,expected",
    [
        (SyncErrorType.AUTHENTICATION_FAILED, "Sync: Please re-authenticate with Google Calendar"),
        (SyncErrorType.TOKEN_REFRESH_FAILED, "Sync: Please re-authenticate with Google Calendar"),
        (SyncErrorType.NETWORK_ERROR, "Sync: Network error, please check your internet connection"),
        (SyncErrorType.VALIDATION_ERROR, "Sync: raw message"),
    ],
)
def test_user_message(error_type, expected):
    assert CalendarSyncError(error_type, "raw message").user_message("Sync") == expected


def test_only_auth_errors_are_fatal():
    assert CalendarSyncError(SyncErrorType.AUTHENTICATION_FAILED, "x").is_fatal
    assert CalendarSyncError(SyncErrorType.TOKEN_REFRESH_FAILED, "x").is_fatal
    assert not CalendarSyncError(SyncErrorType.NETWORK_ERROR, "x").is_fatal
