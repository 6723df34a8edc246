"""Translation between Google Calendar events and note records."""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, NamedTuple, Optional

from notesync.config import get_settings
from notesync.errors import CalendarSyncError, SyncErrorType
from notesync.models import (
    CALENDAR_EVENT_TAG,
    FIELD_CALENDAR_ID,
    FIELD_DUE,
    FIELD_DUE_DATE,
    FIELD_END_DATE,
    FIELD_END_TIME,
    FIELD_EVENT_ID,
    FIELD_IS_RECURRING,
    FIELD_LAST_SYNC,
    FIELD_RECURRENCE,
    FIELD_RECURRING_EVENT_ID,
    FIELD_START_DATE,
    FIELD_START_TIME,
    FIELD_SYNC_ENABLED,
    FIELD_TIME_ZONE,
    ConflictResolution,
    EventMapping,
    Record,
    SyncDirection,
)
from notesync.recurrence import coerce_datetime

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Writing sync metadata back bumps the host's modification time; edits this
# close to the last sync are that write, not a user change.
MODIFICATION_GRACE = timedelta(seconds=5)


class SyncMetadata(NamedTuple):
    event_id: Optional[str]
    calendar_id: Optional[str]
    last_sync: Optional[str]
    sync_enabled: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validation_error(message: str, cause: Optional[BaseException] = None) -> CalendarSyncError:
    return CalendarSyncError(SyncErrorType.VALIDATION_ERROR, message, cause)


def parse_date_field(value: Any, field_name: str) -> datetime:
    """Parse a date-bearing value, raising a validation error when impossible."""
    if value is None or value == "":
        raise _validation_error(f"{field_name} is required but not provided")
    try:
        return coerce_datetime(value)
    except (TypeError, ValueError) as e:
        raise _validation_error(f"Invalid date format for {field_name}: {value!r}", e)


def parse_timestamp(value: Any) -> datetime:
    """Parse a sync/modification timestamp as an aware UTC datetime.

    Missing or unparseable values count as the epoch so that anything
    compares as newer.
    """
    if not value:
        return EPOCH
    try:
        parsed = coerce_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable timestamp {value!r}, treating as never")
        return EPOCH
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _has_time_of_day(value: datetime) -> bool:
    return value.hour != 0 or value.minute != 0


def _parse_clock(value: Any, field_name: str) -> time:
    parts = str(value).strip().split(":")
    if len(parts) != 2:
        raise _validation_error(f"Invalid time format for {field_name}. Expected HH:MM format")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError as e:
        raise _validation_error(f"Invalid time values in {field_name}: {value!r}", e)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise _validation_error(f"Invalid time values in {field_name}: {value!r}")
    return time(hour, minute)


def _timed_boundary(value: datetime, time_zone: Optional[str] = None) -> dict:
    boundary = {"dateTime": value.isoformat()}
    if time_zone:
        boundary["timeZone"] = time_zone
    elif value.tzinfo is None:
        boundary["timeZone"] = get_settings().default_time_zone
    return boundary


def _all_day_boundary(value: datetime) -> dict:
    return {"date": value.date().isoformat()}


def to_record_fields(event: dict, now: Optional[datetime] = None) -> dict[str, Any]:
    """
    Map a Google Calendar event onto record fields.

    Recurring instances are stored under their master event id. Timed
    events keep both the editable ``HH:MM`` clock fields and the full
    ISO start/end; all-day events only get a due date.
    """
    start = event.get("start") or {}
    end = event.get("end") or {}
    is_all_day = not start.get("dateTime")
    base_event_id = event.get("recurringEventId") or event.get("id")

    fields: dict[str, Any] = {
        FIELD_EVENT_ID: base_event_id,
        FIELD_SYNC_ENABLED: True,
        FIELD_LAST_SYNC: (now or utc_now()).isoformat(),
        "tags": [CALENDAR_EVENT_TAG],
    }

    if event.get("description"):
        fields["description"] = event["description"]

    if event.get("location"):
        fields["location"] = event["location"]

    if event.get("recurrence"):
        fields[FIELD_RECURRENCE] = list(event["recurrence"])
        fields[FIELD_IS_RECURRING] = True

    if event.get("recurringEventId"):
        fields[FIELD_RECURRING_EVENT_ID] = event["recurringEventId"]
        fields[FIELD_IS_RECURRING] = True

    if is_all_day:
        start_date = parse_date_field(start.get("date"), "start date")
        fields[FIELD_DUE_DATE] = start_date.date().isoformat()
    else:
        start_time = parse_date_field(start.get("dateTime"), "start date")
        end_time = parse_date_field(end.get("dateTime") or end.get("date"), "end date")

        fields[FIELD_START_TIME] = start_time.strftime("%H:%M")
        fields[FIELD_END_TIME] = end_time.strftime("%H:%M")
        fields[FIELD_DUE_DATE] = start_time.date().isoformat()
        fields[FIELD_START_DATE] = start_time.isoformat()
        fields[FIELD_END_DATE] = end_time.isoformat()
        if start.get("timeZone"):
            fields[FIELD_TIME_ZONE] = start["timeZone"]

    return fields


def _due_value(values: dict) -> Any:
    return values.get(FIELD_DUE_DATE) or values.get(FIELD_DUE)


def to_remote_event(record: Record) -> dict:
    """
    Map a record onto a partial Google Calendar event body.

    Timing is resolved from, in order: a start-date/end-date pair, a due
    date with start-time/end-time clocks, or a bare due date. A record
    with none of these is rejected.
    """
    values = record.values
    summary = values.get("title") or values.get("name") or get_settings().untitled_event_title

    event: dict[str, Any] = {"summary": str(summary)}

    if values.get("description"):
        event["description"] = str(values["description"])

    if values.get("location"):
        event["location"] = str(values["location"])

    recurrence = values.get(FIELD_RECURRENCE)
    time_zone = values.get(FIELD_TIME_ZONE)
    if recurrence:
        event["recurrence"] = [recurrence] if isinstance(recurrence, str) else list(recurrence)
        # Recurring series need an explicit zone to expand in
        time_zone = time_zone or get_settings().default_time_zone

    start_value = values.get(FIELD_START_DATE)
    end_value = values.get(FIELD_END_DATE)
    due_value = _due_value(values)
    start_clock = values.get(FIELD_START_TIME)
    end_clock = values.get(FIELD_END_TIME)

    if start_value and end_value:
        start = parse_date_field(start_value, FIELD_START_DATE)
        end = parse_date_field(end_value, FIELD_END_DATE)

        if _has_time_of_day(start) or _has_time_of_day(end):
            event["start"] = _timed_boundary(start, time_zone)
            event["end"] = _timed_boundary(end, time_zone)
        else:
            # Google Calendar uses exclusive end dates for all-day events
            event["start"] = _all_day_boundary(start)
            event["end"] = _all_day_boundary(end + timedelta(days=1))

    elif due_value and start_clock and end_clock:
        due = parse_date_field(due_value, FIELD_DUE_DATE)
        start = datetime.combine(due.date(), _parse_clock(start_clock, FIELD_START_TIME), due.tzinfo)
        end = datetime.combine(due.date(), _parse_clock(end_clock, FIELD_END_TIME), due.tzinfo)

        event["start"] = _timed_boundary(start, time_zone)
        event["end"] = _timed_boundary(end, time_zone)

    elif due_value:
        due = parse_date_field(due_value, FIELD_DUE_DATE)

        if _has_time_of_day(due):
            event["start"] = _timed_boundary(due, time_zone)
            event["end"] = _timed_boundary(due + timedelta(hours=1), time_zone)
        else:
            event["start"] = _all_day_boundary(due)
            event["end"] = _all_day_boundary(due + timedelta(days=1))

    else:
        raise _validation_error(f"No valid date information found in record {record.id}")

    return event


def is_calendar_event(record: Record) -> bool:
    """A record is a calendar event when it has dates and has not opted out."""
    values = record.values

    if values.get(FIELD_SYNC_ENABLED) is False:
        return False

    has_start_end = bool(values.get(FIELD_START_DATE) and values.get(FIELD_END_DATE))
    has_due = bool(_due_value(values))

    return has_start_end or has_due


def should_sync(record: Record) -> bool:
    if not is_calendar_event(record):
        return False
    return record.values.get(FIELD_SYNC_ENABLED) in (True, None)


def is_record_modified(record: Record) -> bool:
    """
    Decide whether a record needs pushing to the remote calendar.

    Without a host-supplied modification time this cannot be known, so a
    record is only considered modified when it was never synced or has no
    remote event id yet.
    """
    last_sync = record.values.get(FIELD_LAST_SYNC)
    if not last_sync:
        return True

    if record.modified_at is not None:
        threshold = parse_timestamp(last_sync) + MODIFICATION_GRACE
        return parse_timestamp(record.modified_at) > threshold

    return not record.values.get(FIELD_EVENT_ID)


def extract_sync_metadata(record: Record) -> SyncMetadata:
    values = record.values
    return SyncMetadata(
        event_id=values.get(FIELD_EVENT_ID),
        calendar_id=values.get(FIELD_CALENDAR_ID),
        last_sync=values.get(FIELD_LAST_SYNC),
        sync_enabled=values.get(FIELD_SYNC_ENABLED) is not False,
    )


def create_event_mapping(
    record_id: str,
    event_id: str,
    calendar_id: str,
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
) -> EventMapping:
    return EventMapping(
        record_id=record_id,
        remote_event_id=event_id,
        calendar_id=calendar_id,
        last_synced_at=utc_now(),
        direction=direction,
    )


def resolve_conflict(record_modified_at: datetime, event_modified_at: datetime) -> ConflictResolution:
    """Pick the most recently modified side; identical timestamps need a human."""
    local = parse_timestamp(record_modified_at)
    remote = parse_timestamp(event_modified_at)

    if local > remote:
        return ConflictResolution.USE_LOCAL
    if remote > local:
        return ConflictResolution.USE_REMOTE
    return ConflictResolution.MANUAL
