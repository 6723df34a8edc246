"""Error taxonomy for calendar sync."""

from enum import Enum
from typing import Optional


class SyncErrorType(str, Enum):
    """Kinds of failure surfaced to the host."""

    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    AUTHORIZATION_REQUIRED = "AUTHORIZATION_REQUIRED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    API_QUOTA_EXCEEDED = "API_QUOTA_EXCEEDED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
    CALENDAR_NOT_FOUND = "CALENDAR_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Errors after which no further remote call in the same pass can succeed.
FATAL_AUTH_ERRORS = frozenset({
    SyncErrorType.AUTHENTICATION_FAILED,
    SyncErrorType.TOKEN_REFRESH_FAILED,
})


class CalendarSyncError(Exception):
    """A sync failure normalized to a ``SyncErrorType``."""

    def __init__(
        self,
        error_type: SyncErrorType,
        message: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.original_error = original_error

    def __repr__(self) -> str:
        return f"CalendarSyncError({self.error_type.value}, {self.message!r})"

    @property
    def is_fatal(self) -> bool:
        return self.error_type in FATAL_AUTH_ERRORS

    @classmethod
    def from_error(
        cls,
        error: BaseException,
        error_type: SyncErrorType = SyncErrorType.UNKNOWN_ERROR,
    ) -> "CalendarSyncError":
        """Wrap an arbitrary exception, leaving already-normalized errors untouched."""
        if isinstance(error, CalendarSyncError):
            return error
        return cls(error_type, str(error) or error.__class__.__name__, error)

    def user_message(self, prefix: str = "Calendar sync failed") -> str:
        """Short message for a user-visible notice, keyed off the error kind."""
        if self.error_type in FATAL_AUTH_ERRORS:
            return f"{prefix}: Please re-authenticate with Google Calendar"
        if self.error_type == SyncErrorType.API_QUOTA_EXCEEDED:
            return f"{prefix}: API quota exceeded, please try again later"
        if self.error_type == SyncErrorType.NETWORK_ERROR:
            return f"{prefix}: Network error, please check your internet connection"
        if self.error_type == SyncErrorType.SYNC_IN_PROGRESS:
            return f"{prefix}: A sync is already running"
        return f"{prefix}: {self.message}"
