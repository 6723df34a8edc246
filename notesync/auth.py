"""Google OAuth helpers."""

import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx

from notesync.config import CalendarSyncConfig, get_settings
from notesync.errors import CalendarSyncError, SyncErrorType

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Host-provided consent step: open the URL, return the authorization code.
CodeProvider = Callable[[str], Awaitable[str]]


def get_redirect_uri(config: CalendarSyncConfig) -> str:
    """Configured redirect URI, falling back to the local callback server."""
    if config.redirect_uri and config.redirect_uri.strip():
        return config.redirect_uri.strip()
    return get_settings().default_redirect_uri


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    scopes: Optional[list[str]] = None,
    state: Optional[str] = None,
    prompt: str = "consent",
) -> str:
    """Build Google OAuth authorization URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes or CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": prompt,
    }

    if state:
        params["state"] = state

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(
    code: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str,
) -> dict:
    """Exchange authorization code for tokens."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise ValueError(f"Token exchange failed: {response.text}")

        return response.json()


async def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
) -> dict:
    """Refresh an access token."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code != 200:
            logger.error(f"Token refresh failed: {response.text}")
            raise ValueError(f"Token refresh failed: {response.text}")

        return response.json()


async def authenticate(config: CalendarSyncConfig, code_provider: CodeProvider) -> CalendarSyncConfig:
    """
    Run the OAuth consent flow and return a config carrying fresh tokens.

    Google only returns a refresh token on first consent; when it is absent
    the previously stored one is kept.
    """
    if not config.has_credentials():
        raise CalendarSyncError(
            SyncErrorType.INVALID_CONFIGURATION,
            "Client ID and Client Secret are required to authenticate",
        )

    redirect_uri = get_redirect_uri(config)
    auth_url = build_auth_url(config.client_id, redirect_uri)

    try:
        code = await code_provider(auth_url)
    except Exception as e:
        raise CalendarSyncError(
            SyncErrorType.AUTHORIZATION_REQUIRED,
            f"Authorization was not completed: {e}",
            e,
        )

    if not code:
        raise CalendarSyncError(
            SyncErrorType.AUTHORIZATION_REQUIRED,
            "No authorization code received",
        )

    try:
        tokens = await exchange_code_for_tokens(
            code, redirect_uri, config.client_id, config.client_secret
        )
    except (ValueError, httpx.HTTPError) as e:
        raise CalendarSyncError(SyncErrorType.AUTHENTICATION_FAILED, str(e), e)

    logger.info("Google Calendar authentication successful")
    return config.model_copy(update={
        "access_token": tokens["access_token"],
        "refresh_token": tokens.get("refresh_token") or config.refresh_token,
    })


async def load_calendars(client) -> list[dict]:
    """List calendars as ``{id, name, primary}`` for a settings picker."""
    calendars = await client.list_calendars()
    return [
        {
            "id": cal["id"],
            "name": cal.get("summary") or cal["id"],
            "primary": bool(cal.get("primary")),
        }
        for cal in calendars
    ]
