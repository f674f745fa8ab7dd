"""Named and custom time windows for ledger queries.

:func:`resolve_time_range` turns a preset such as ``"this_week"`` or a pair
of literal timestamps into a ``(start, end)`` pair of timezone-aware
datetimes.  Both bounds are inclusive: ``end`` is the last representable
instant of the period (``23:59:59.999999``), not the start of the next one.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from enum import StrEnum

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"

_ONE_TICK = timedelta(microseconds=1)


class TimeRangeType(StrEnum):
    """Time window presets understood by ``query_transactions``."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"
    LAST_WEEK = "last_week"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    CUSTOM = "custom"


class TimeRangeError(ValueError):
    """Raised when a time range cannot be resolved."""


def local_now(tz: tzinfo | None = None) -> datetime:
    """Return the current time as an aware datetime in *tz* (server local if ``None``)."""
    if tz is None:
        return datetime.now().astimezone()
    return datetime.now(tz)


def resolve_time_range(
    range_type: TimeRangeType | str,
    start_time: str | None = None,
    end_time: str | None = None,
    *,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Resolve a preset or custom window to an inclusive ``(start, end)`` pair.

    Args:
        range_type: One of the :class:`TimeRangeType` values.
        start_time: Custom start, ``YYYY-MM-DD hh:mm:ss`` or ``YYYY-MM-DD``.
            Only used for ``custom``.
        end_time: Custom end, same formats as *start_time*.
        now: Reference instant.  Defaults to the current local time; the
            returned bounds carry its time zone.

    Returns:
        ``(start, end)`` with ``start`` at ``00:00:00`` of the first day and
        ``end`` at ``23:59:59.999999`` of the last day for presets.

    Raises:
        TimeRangeError: Unknown range type, or a custom bound that is
            missing or cannot be parsed.
    """
    if now is None:
        now = local_now()
    tz = now.tzinfo

    try:
        kind = TimeRangeType(range_type)
    except ValueError:
        raise TimeRangeError(f"unknown time range type: {range_type}") from None

    today = now.date()

    if kind == TimeRangeType.TODAY:
        return _day_start(today, tz), _day_end(today, tz)

    if kind == TimeRangeType.YESTERDAY:
        yesterday = today - timedelta(days=1)
        return _day_start(yesterday, tz), _day_end(yesterday, tz)

    if kind == TimeRangeType.THIS_WEEK:
        monday = _monday_of(today)
        return _day_start(monday, tz), _day_end(monday + timedelta(days=6), tz)

    if kind == TimeRangeType.LAST_WEEK:
        monday = _monday_of(today) - timedelta(days=7)
        return _day_start(monday, tz), _day_end(monday + timedelta(days=6), tz)

    if kind == TimeRangeType.THIS_MONTH:
        first = today.replace(day=1)
        return _day_start(first, tz), _day_start(_next_month(first), tz) - _ONE_TICK

    if kind == TimeRangeType.LAST_MONTH:
        this_first = today.replace(day=1)
        last_first = (this_first - timedelta(days=1)).replace(day=1)
        return _day_start(last_first, tz), _day_start(this_first, tz) - _ONE_TICK

    if kind == TimeRangeType.LAST_7_DAYS:
        return _day_start(today - timedelta(days=6), tz), _day_end(today, tz)

    if kind == TimeRangeType.LAST_30_DAYS:
        return _day_start(today - timedelta(days=29), tz), _day_end(today, tz)

    # custom
    if not start_time or not end_time:
        raise TimeRangeError("custom time range requires both start_time and end_time")
    start = _parse_bound(start_time, tz, end_of_day=False)
    end = _parse_bound(end_time, tz, end_of_day=True)
    return start, end


# ── Helpers ───────────────────────────────────────────────────────────────────


def _day_start(day: date, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def _day_end(day: date, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz)


def _monday_of(day: date) -> date:
    """ISO week start: Sunday (isoweekday 7) belongs to the week it ends."""
    return day - timedelta(days=day.isoweekday() - 1)


def _next_month(first: date) -> date:
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def _parse_bound(value: str, tz: tzinfo | None, *, end_of_day: bool) -> datetime:
    """Parse a custom bound; a date-only value expands to the start or end of that day."""
    text = value.strip()
    try:
        return datetime.strptime(text, DATETIME_FORMAT).replace(tzinfo=tz)
    except ValueError:
        pass

    label = "end_time" if end_of_day else "start_time"
    try:
        day = datetime.strptime(text, DATE_FORMAT).date()
    except ValueError:
        raise TimeRangeError(f"invalid {label} format: {value!r}") from None
    return _day_end(day, tz) if end_of_day else _day_start(day, tz)
