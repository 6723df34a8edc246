"""Tests for Google OAuth helpers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest

from notesync import auth
from notesync.config import CalendarSyncConfig
from notesync.errors import CalendarSyncError, SyncErrorType


class FakeResponse:
    def __init__(self, status_code: int, payload: dict | None = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


def _fake_async_client(response: FakeResponse, posted: list):
    class FakeClient:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, data=None):
            posted.append((url, data))
            return response

    return FakeClient


def _config(**overrides) -> CalendarSyncConfig:
    values = {"client_id": "client-id", "client_secret": "client-secret"}
    values.update(overrides)
    return CalendarSyncConfig(**values)


def test_build_auth_url_requests_offline_calendar_access():
    url = auth.build_auth_url("client-id", "http://localhost:8080/auth/callback", state="xyz")

    parsed = urlparse(url)
    query = parse_qs(parsed.query)

    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == auth.GOOGLE_AUTH_URL
    assert query["scope"] == ["https://www.googleapis.com/auth/calendar"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["xyz"]


def test_get_redirect_uri_falls_back_to_default():
    assert auth.get_redirect_uri(_config()) == "http://localhost:8080/auth/callback"
    assert auth.get_redirect_uri(_config(redirect_uri="  ")) == "http://localhost:8080/auth/callback"
    assert auth.get_redirect_uri(_config(redirect_uri="https://notes.example/cb")) == "https://notes.example/cb"


@pytest.mark.asyncio
async def test_exchange_code_for_tokens_posts_authorization_code(monkeypatch):
    posted: list = []
    response = FakeResponse(200, {"access_token": "a", "refresh_token": "r"})
    monkeypatch.setattr(auth.httpx, "AsyncClient", _fake_async_client(response, posted))

    tokens = await auth.exchange_code_for_tokens("the-code", "http://cb", "cid", "secret")

    assert tokens == {"access_token": "a", "refresh_token": "r"}
    url, data = posted[0]
    assert url == auth.GOOGLE_TOKEN_URL
    assert data["grant_type"] == "authorization_code"
    assert data["code"] == "the-code"


@pytest.mark.asyncio
async def test_refresh_access_token_raises_on_error_status(monkeypatch):
    posted: list = []
    response = FakeResponse(400, text='{"error": "invalid_grant"}')
    monkeypatch.setattr(auth.httpx, "AsyncClient", _fake_async_client(response, posted))

    with pytest.raises(ValueError, match="invalid_grant"):
        await auth.refresh_access_token("refresh", "cid", "secret")

    assert posted[0][1]["grant_type"] == "refresh_token"


@pytest.mark.asyncio
async def test_authenticate_returns_config_with_tokens(monkeypatch):
    exchange = AsyncMock(return_value={"access_token": "new-access", "refresh_token": "new-refresh"})
    monkeypatch.setattr(auth, "exchange_code_for_tokens", exchange)
    seen_urls = []

    async def code_provider(url):
        seen_urls.append(url)
        return "auth-code"

    config = _config(refresh_token="old-refresh")
    updated = await auth.authenticate(config, code_provider)

    assert updated.access_token == "new-access"
    assert updated.refresh_token == "new-refresh"
    assert config.access_token is None
    assert seen_urls[0].startswith(auth.GOOGLE_AUTH_URL)
    exchange.assert_awaited_once_with(
        "auth-code", "http://localhost:8080/auth/callback", "client-id", "client-secret"
    )


@pytest.mark.asyncio
async def test_authenticate_keeps_previous_refresh_token(monkeypatch):
    monkeypatch.setattr(auth, "exchange_code_for_tokens", AsyncMock(return_value={"access_token": "new-access"}))

    updated = await auth.authenticate(_config(refresh_token="old-refresh"), AsyncMock(return_value="code"))

    assert updated.refresh_token == "old-refresh"


@pytest.mark.asyncio
async def test_authenticate_without_code_requires_authorization():
    with pytest.raises(CalendarSyncError) as exc_info:
        await auth.authenticate(_config(), AsyncMock(return_value=""))
    assert exc_info.value.error_type == SyncErrorType.AUTHORIZATION_REQUIRED

    with pytest.raises(CalendarSyncError) as exc_info:
        await auth.authenticate(_config(), AsyncMock(side_effect=TimeoutError("closed")))
    assert exc_info.value.error_type == SyncErrorType.AUTHORIZATION_REQUIRED


@pytest.mark.asyncio
async def test_authenticate_failed_exchange(monkeypatch):
    monkeypatch.setattr(auth, "exchange_code_for_tokens", AsyncMock(side_effect=ValueError("bad code")))

    with pytest.raises(CalendarSyncError) as exc_info:
        await auth.authenticate(_config(), AsyncMock(return_value="code"))
    assert exc_info.value.error_type == SyncErrorType.AUTHENTICATION_FAILED


@pytest.mark.asyncio
async def test_authenticate_requires_client_credentials():
    with pytest.raises(CalendarSyncError) as exc_info:
        await auth.authenticate(CalendarSyncConfig(), AsyncMock(return_value="code"))
    assert exc_info.value.error_type == SyncErrorType.INVALID_CONFIGURATION


@pytest.mark.asyncio
async def test_load_calendars_shapes_picker_entries():
    client = SimpleNamespace(list_calendars=AsyncMock(return_value=[
        {"id": "primary", "summary": "Me", "primary": True},
        {"id": "work@example.com"},
    ]))

    assert await auth.load_calendars(client) == [
        {"id": "primary", "name": "Me", "primary": True},
        {"id": "work@example.com", "name": "work@example.com", "primary": False},
    ]
