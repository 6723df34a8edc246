"""Google Calendar API wrapper with token refresh and error normalization."""

import asyncio
import inspect
import logging
import socket
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import ServerNotFoundError

from notesync import auth
from notesync.config import CalendarSyncConfig, get_settings
from notesync.errors import CalendarSyncError, SyncErrorType

logger = logging.getLogger(__name__)

TokenRefreshCallback = Callable[[str], Any]

NETWORK_ERRORS = (
    ServerNotFoundError,
    socket.gaierror,
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)


def _http_status(error: BaseException) -> Optional[int]:
    if isinstance(error, HttpError):
        return int(error.resp.status)
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def is_authentication_error(error: BaseException) -> bool:
    return _http_status(error) == 401


def is_quota_error(error: BaseException) -> bool:
    return _http_status(error) in (403, 429) or "quota" in str(error).lower()


def is_not_found_error(error: BaseException) -> bool:
    return _http_status(error) in (404, 410)


def is_network_error(error: BaseException) -> bool:
    return isinstance(error, NETWORK_ERRORS) or "network" in str(error).lower()


def classify_error(error: BaseException, operation: str) -> CalendarSyncError:
    """Normalize a non-authentication API failure."""
    if isinstance(error, CalendarSyncError):
        return error
    if is_quota_error(error):
        return CalendarSyncError(
            SyncErrorType.API_QUOTA_EXCEEDED,
            "Google Calendar API quota exceeded. Please try again later.",
            error,
        )
    if is_not_found_error(error):
        return CalendarSyncError(
            SyncErrorType.EVENT_NOT_FOUND,
            f"{operation}: resource not found",
            error,
        )
    if is_network_error(error):
        return CalendarSyncError(
            SyncErrorType.NETWORK_ERROR,
            "Network error occurred. Please check your internet connection.",
            error,
        )
    return CalendarSyncError.from_error(error)


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat()


class GoogleCalendarClient:
    """Async wrapper around the Google Calendar v3 API."""

    def __init__(
        self,
        config: CalendarSyncConfig,
        on_token_refresh: Optional[TokenRefreshCallback] = None,
    ):
        """Initialize from a sync config; refreshed tokens are reported via the callback."""
        if not config.client_id.strip():
            raise CalendarSyncError(
                SyncErrorType.INVALID_CONFIGURATION,
                "Google Calendar Client ID is required",
            )
        if not config.client_secret.strip():
            raise CalendarSyncError(
                SyncErrorType.INVALID_CONFIGURATION,
                "Google Calendar Client Secret is required",
            )

        self.config = config
        self.settings = get_settings()
        self.access_token = config.access_token
        self.refresh_token = config.refresh_token
        self.on_token_refresh = on_token_refresh
        self.service = self._build_service()

    def _build_service(self):
        self.credentials = Credentials(token=self.access_token)
        return build("calendar", "v3", credentials=self.credentials, cache_discovery=False)

    async def _call(self, operation: str, call: Callable[[], Any]) -> Any:
        """
        Run a blocking API call off the event loop with one refresh-and-retry.

        A 401 triggers exactly one token refresh followed by one retry; a
        second 401 is reported as an authentication failure. Quota and
        network errors are raised immediately.
        """
        try:
            return await asyncio.to_thread(call)
        except Exception as e:
            if not is_authentication_error(e):
                raise classify_error(e, operation)
            logger.info(f"{operation}: received 401, attempting to refresh token")

        await self.refresh_access_token()
        await self._notify_token_refresh()

        try:
            return await asyncio.to_thread(call)
        except Exception as e:
            if is_authentication_error(e):
                raise CalendarSyncError(
                    SyncErrorType.AUTHENTICATION_FAILED,
                    "Authentication failed. Please re-authenticate with Google Calendar.",
                    e,
                )
            raise classify_error(e, operation)

    async def _notify_token_refresh(self) -> None:
        if not self.on_token_refresh:
            return
        try:
            result = self.on_token_refresh(self.access_token)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # The new token is already in use; only persisting it failed
            logger.exception(f"Token refresh callback failed: {e}")

    def get_auth_url(self) -> str:
        """Authorization URL for offline calendar access."""
        return auth.build_auth_url(self.config.client_id, auth.get_redirect_uri(self.config))

    async def get_tokens(self, code: str) -> dict:
        """Exchange an authorization code and start using the new tokens."""
        tokens = await auth.exchange_code_for_tokens(
            code,
            auth.get_redirect_uri(self.config),
            self.config.client_id,
            self.config.client_secret,
        )
        self.access_token = tokens["access_token"]
        self.refresh_token = tokens.get("refresh_token") or self.refresh_token
        self.service = self._build_service()
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}

    async def refresh_access_token(self) -> str:
        """Refresh the access token and rebuild the API service with it."""
        if not self.refresh_token:
            raise CalendarSyncError(
                SyncErrorType.TOKEN_REFRESH_FAILED,
                "No refresh token available. Please re-authenticate with Google Calendar.",
            )
        try:
            tokens = await auth.refresh_access_token(
                self.refresh_token,
                self.config.client_id,
                self.config.client_secret,
            )
        except Exception as e:
            logger.error(f"Failed to refresh token: {e}")
            raise CalendarSyncError(
                SyncErrorType.TOKEN_REFRESH_FAILED,
                "Authentication failed. Please re-authenticate with Google Calendar.",
                e,
            )

        self.access_token = tokens["access_token"]
        self.refresh_token = tokens.get("refresh_token") or self.refresh_token
        self.service = self._build_service()
        logger.info("Token refreshed successfully")
        return self.access_token

    async def list_calendars(self) -> list[dict]:
        """List all calendars the user has access to."""
        def _list():
            return self.service.calendarList().list().execute().get("items", [])

        return await self._call("list_calendars", _list)

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        max_results: Optional[int] = None,
    ) -> list[dict]:
        """
        List master events in a time range.

        Recurring events come back once, carrying their RRULEs, instead of
        as expanded instances.
        """
        request_params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": max_results or self.settings.list_page_size,
            "singleEvents": False,
            "orderBy": "updated",
        }
        if time_min:
            request_params["timeMin"] = _rfc3339(time_min)
        if time_max:
            request_params["timeMax"] = _rfc3339(time_max)

        def _list():
            params = dict(request_params)
            all_events = []
            while True:
                result = self.service.events().list(**params).execute()
                all_events.extend(result.get("items", []))

                page_token = result.get("nextPageToken")
                if not page_token:
                    return all_events
                params["pageToken"] = page_token

        return await self._call("list_events", _list)

    async def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        """Get a single event, or None if it no longer exists."""
        try:
            return await self._call(
                "get_event",
                lambda: self.service.events().get(
                    calendarId=calendar_id,
                    eventId=event_id,
                ).execute(),
            )
        except CalendarSyncError as e:
            if e.error_type == SyncErrorType.EVENT_NOT_FOUND:
                return None
            raise

    async def create_event(self, calendar_id: str, event_data: dict) -> dict:
        """Create an event on a calendar."""
        return await self._call(
            "create_event",
            lambda: self.service.events().insert(
                calendarId=calendar_id,
                body=event_data,
            ).execute(),
        )

    async def update_event(self, calendar_id: str, event_id: str, event_data: dict) -> dict:
        """Update an event."""
        return await self._call(
            "update_event",
            lambda: self.service.events().update(
                calendarId=calendar_id,
                eventId=event_id,
                body=event_data,
            ).execute(),
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event. Events that are already gone count as deleted."""
        try:
            await self._call(
                "delete_event",
                lambda: self.service.events().delete(
                    calendarId=calendar_id,
                    eventId=event_id,
                ).execute(),
            )
        except CalendarSyncError as e:
            if e.error_type == SyncErrorType.EVENT_NOT_FOUND:
                logger.info(f"Event {event_id} already deleted")
                return True
            raise
        return True
