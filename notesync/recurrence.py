"""Recurrence rule expansion and virtual occurrences of recurring records."""

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Union

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from notesync.models import (
    FIELD_DUE,
    FIELD_DUE_DATE,
    FIELD_EVENT_ID,
    FIELD_IS_RECURRING,
    FIELD_RECURRENCE,
    FIELD_START_DATE,
    Record,
    RecordRef,
    VirtualOccurrence,
)

logger = logging.getLogger(__name__)

RRULE_PREFIX = "RRULE:"

# Sunday-first indices, matching how weeks are walked below.
WEEKDAY_INDEX = {"SU": 0, "MO": 1, "TU": 2, "WE": 3, "TH": 4, "FR": 5, "SA": 6}

DateLike = Union[date, datetime, str]


def coerce_datetime(value: DateLike) -> datetime:
    """Turn a record/event date value into a ``datetime``.

    Plain dates become midnight. Strings are parsed as ISO 8601 (basic or
    extended format). Raises ``ValueError`` for anything else.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        return isoparse(value.strip())
    raise ValueError(f"Not a date value: {value!r}")


def _wall_clock(value: DateLike) -> datetime:
    return coerce_datetime(value).replace(tzinfo=None)


def parse_rule(rule: str) -> dict[str, str]:
    """Split ``FREQ=WEEKLY;BYDAY=MO`` into its upper-cased key/value parts."""
    if rule.upper().startswith(RRULE_PREFIX):
        rule = rule[len(RRULE_PREFIX):]

    parts: dict[str, str] = {}
    for part in rule.split(";"):
        key, sep, value = part.partition("=")
        if sep and key.strip() and value.strip():
            parts[key.strip().upper()] = value.strip()
    return parts


def _parse_int(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _parse_int_list(raw: Optional[str]) -> list[int]:
    if not raw:
        return []
    return [n for n in (_parse_int(p) for p in raw.split(",")) if n is not None]


def _parse_by_day(raw: Optional[str]) -> list[int]:
    # Ordinal prefixes ("1MO", "-1FR") carry no meaning for WEEKLY; keep the day.
    if not raw:
        return []
    days = {WEEKDAY_INDEX.get(token.strip().upper()[-2:]) for token in raw.split(",")}
    days.discard(None)
    return sorted(days)


def _parse_until(raw: Optional[str], anchor: datetime) -> Optional[datetime]:
    if not raw:
        return None
    try:
        until = isoparse(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable UNTIL value: {raw}")
        return None

    if len(raw) == 8:
        # Date-only UNTIL covers the whole day
        until = until + timedelta(days=1) - timedelta(microseconds=1)
    if until.tzinfo is not None and anchor.tzinfo is not None:
        until = until.astimezone(anchor.tzinfo)
    return until.replace(tzinfo=None)


def _sunday_index(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def _next_weekly(current: datetime, interval: int, by_day: list[int]) -> datetime:
    today = _sunday_index(current)
    later = [day for day in by_day if day > today]
    if later:
        return current + timedelta(days=later[0] - today)
    # Wrap to the first listed day of the week ``interval`` weeks on
    return current + timedelta(weeks=interval, days=by_day[0] - today)


def _month_days(by_month_day: list[int], year: int, month: int, clamp: bool) -> list[int]:
    """Resolve BYMONTHDAY values (negative counts from month end) for one month."""
    days_in_month = calendar.monthrange(year, month)[1]
    resolved = set()
    for day in by_month_day:
        if day > days_in_month:
            if clamp:
                resolved.add(days_in_month)
        elif day > 0:
            resolved.add(day)
        elif days_in_month + day + 1 >= 1:
            resolved.add(days_in_month + day + 1)
    return sorted(resolved)


def _next_monthly(current: datetime, interval: int, by_month_day: list[int]) -> datetime:
    this_month = _month_days(by_month_day, current.year, current.month, clamp=False)
    later = [day for day in this_month if day > current.day]
    if later:
        return current.replace(day=later[0])

    next_month = current + relativedelta(months=interval)
    candidates = _month_days(by_month_day, next_month.year, next_month.month, clamp=True)
    if not candidates:
        return next_month
    return next_month.replace(day=candidates[0])


def _advance(
    current: datetime,
    freq: str,
    interval: int,
    by_day: list[int],
    by_month_day: list[int],
) -> Optional[datetime]:
    if freq == "DAILY":
        return current + timedelta(days=interval)
    if freq == "WEEKLY":
        if by_day:
            return _next_weekly(current, interval, by_day)
        return current + timedelta(weeks=interval)
    if freq == "MONTHLY":
        if by_month_day:
            return _next_monthly(current, interval, by_month_day)
        return current + relativedelta(months=interval)
    if freq == "YEARLY":
        return current + relativedelta(years=interval)
    return None


def expand(
    rule: str,
    anchor: DateLike,
    window_start: DateLike,
    window_end: DateLike,
) -> list[datetime]:
    """
    Expand a recurrence rule into the occurrence dates visible in a window.

    The anchor itself is returned when it lies within one day of the window
    and always counts as the first occurrence. Expansion stops once COUNT
    occurrences have been generated, once UNTIL is passed, or one year past
    the end of the window, whichever comes first. Dates dropped by BYMONTH
    still use up a COUNT slot.

    Args:
        rule: RRULE body, with or without the ``RRULE:`` prefix
        anchor: First occurrence (event start)
        window_start: First visible day
        window_end: Last visible day

    Returns:
        Occurrences in chronological order, on the anchor's wall clock
    """
    parts = parse_rule(rule)
    freq = parts.get("FREQ", "").upper()
    interval = _parse_int(parts.get("INTERVAL")) or 1
    if interval < 1:
        interval = 1
    count = _parse_int(parts.get("COUNT"))
    by_day = _parse_by_day(parts.get("BYDAY"))
    by_month_day = [d for d in _parse_int_list(parts.get("BYMONTHDAY")) if d and -31 <= d <= 31]
    by_month = [m for m in _parse_int_list(parts.get("BYMONTH")) if 1 <= m <= 12]

    start = coerce_datetime(anchor)
    until = _parse_until(parts.get("UNTIL"), start)
    current = start.replace(tzinfo=None)

    lower = _wall_clock(window_start) - timedelta(days=1)
    upper = _wall_clock(window_end) + timedelta(days=1)
    horizon = _wall_clock(window_end) + relativedelta(years=1)

    occurrences: list[datetime] = []
    if lower <= current <= upper:
        occurrences.append(current)
    generated = 1

    while current < horizon:
        if count is not None and generated >= count:
            break
        if until is not None and current > until:
            break

        following = _advance(current, freq, interval, by_day, by_month_day)
        if following is None:
            logger.warning(f"Unknown RRULE frequency {freq!r}, stopping expansion")
            break

        current = following
        generated += 1

        if until is not None and current > until:
            break
        if by_month and current.month not in by_month:
            continue
        if lower <= current <= upper:
            occurrences.append(current)

    return occurrences


def create_virtual_occurrences(
    record: Record,
    window_start: DateLike,
    window_end: DateLike,
) -> list[VirtualOccurrence]:
    """Build the occurrences of a recurring record that fall in a window."""
    values = record.values
    recurrence = values.get(FIELD_RECURRENCE)
    if not values.get(FIELD_IS_RECURRING) or not recurrence:
        return []
    if isinstance(recurrence, str):
        recurrence = [recurrence]

    base_event_id = values.get(FIELD_EVENT_ID) or record.id
    anchor_value = values.get(FIELD_START_DATE) or values.get(FIELD_DUE_DATE) or values.get(FIELD_DUE)
    if not anchor_value:
        return []

    try:
        anchor = coerce_datetime(anchor_value)
    except (TypeError, ValueError):
        logger.warning(f"Record {record.id} has an unparseable start {anchor_value!r}")
        return []

    occurrences: list[VirtualOccurrence] = []
    for line in recurrence:
        line = str(line)
        if not line.upper().startswith(RRULE_PREFIX):
            continue
        for when in expand(line, anchor, window_start, window_end):
            day = when.date()
            occurrences.append(
                VirtualOccurrence(
                    occurrence_id=f"{base_event_id}-{day.isoformat()}",
                    base_event_id=base_event_id,
                    record=record,
                    occurrence_date=day,
                )
            )
    return occurrences


def group_records_with_recurrence(
    records: list[Record],
    field: str,
    window_start: DateLike,
    window_end: DateLike,
) -> dict[str, list[RecordRef]]:
    """
    Bucket records by ``YYYY-MM-DD`` for calendar display.

    Recurring records only appear through their occurrences in the window;
    everything else lands on the date held in ``field``.
    """
    grouped: dict[str, list[RecordRef]] = {}

    for record in records:
        if record.values.get(FIELD_IS_RECURRING):
            for occurrence in create_virtual_occurrences(record, window_start, window_end):
                grouped.setdefault(occurrence.occurrence_date.isoformat(), []).append(occurrence)
            continue

        value = record.values.get(field)
        if not value or isinstance(value, (bool, int, float, list)):
            continue
        try:
            day = coerce_datetime(value).date()
        except (TypeError, ValueError):
            continue
        grouped.setdefault(day.isoformat(), []).append(record)

    return grouped
