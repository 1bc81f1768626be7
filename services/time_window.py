"""
Time-window classification and local clock helpers.

Session dates are "YYYY-MM-DD" strings and start/end are "HH:MM" strings in
the deployment's local reference frame. Everything here works either on
minutes-since-midnight integers or on timezone-aware datetimes built from
those strings.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union
from zoneinfo import ZoneInfo

import config

PRESENT = "present"
LATE = "late"
ABSENT = "absent"
ATTENDANCE_STATUSES = (PRESENT, LATE, ABSENT)

MINUTES_PER_DAY = 24 * 60

# Numbers below this are device uptime counters, not epoch milliseconds
MIN_EPOCH_MILLIS = 10_000_000_000


@dataclass(frozen=True)
class Classification:
    """Verdict of the classifier. `status` is None when the scan is rejected."""
    status: Optional[str]
    reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.status is None


def parse_hhmm(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    hours, minutes = value.strip().split(":")[:2]
    return int(hours) * 60 + int(minutes)


def format_hhmm(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def classify(
    current: int,
    start: int,
    end: int,
    grace_minutes: int = config.GRACE_PERIOD_MINUTES,
    end_tolerance_minutes: int = config.END_TOLERANCE_MINUTES,
) -> Classification:
    """
    Classify a scan at `current` against a session running `start`..`end`.

    All arguments are minutes since midnight and start <= end is assumed;
    callers add a day to `end` for sessions that cross midnight.
    """
    grace_deadline = start + grace_minutes
    effective_end = end + end_tolerance_minutes

    if current <= grace_deadline:
        return Classification(PRESENT)
    if current <= effective_end:
        return Classification(LATE)
    return Classification(None, "session has ended")


def effective_end_minutes(start: int, end: int) -> int:
    """End of a session in minutes, pushed past midnight when it wraps."""
    return end + MINUTES_PER_DAY if end < start else end


def crosses_midnight(start_time: str, end_time: str) -> bool:
    return parse_hhmm(end_time) < parse_hhmm(start_time)


def previous_date(session_date: str) -> str:
    return (date.fromisoformat(session_date) - timedelta(days=1)).isoformat()


def get_timezone(name: str = config.TIMEZONE) -> ZoneInfo:
    return ZoneInfo(name)


def session_bounds(session_date: str, start_time: str, end_time: str, tz) -> Tuple[datetime, datetime]:
    """Absolute start/end instants of a session, with midnight rollover applied."""
    day = date.fromisoformat(session_date)
    start_minutes = parse_hhmm(start_time)
    end_minutes = parse_hhmm(end_time)

    start = datetime.combine(day, time(start_minutes // 60, start_minutes % 60), tzinfo=tz)
    end = datetime.combine(day, time(end_minutes // 60, end_minutes % 60), tzinfo=tz)
    if end < start:
        end += timedelta(days=1)
    return start, end


def resolve_capture_time(
    timestamp: Union[str, int, float, datetime, None],
    tz,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Turn whatever the scanner sent into an aware datetime.

    Accepts ISO-8601 strings, epoch milliseconds or datetimes. Missing values
    and small numbers (uptime counters from devices without a real clock)
    fall back to `now`. Naive values are read in `tz`.
    """
    now = now or datetime.now(timezone.utc)

    if timestamp is None or timestamp == "":
        return now

    if isinstance(timestamp, bool):
        raise ValueError(f"Unsupported timestamp: {timestamp!r}")

    if isinstance(timestamp, (int, float)):
        if timestamp < MIN_EPOCH_MILLIS:
            return now
        try:
            return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {timestamp!r}") from e

    if isinstance(timestamp, datetime):
        parsed = timestamp
    else:
        text = timestamp.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def local_date_and_minutes(instant: datetime, tz) -> Tuple[str, int]:
    """Calendar date string and minutes since midnight of `instant` in `tz`."""
    local = instant.astimezone(tz)
    return local.date().isoformat(), local.hour * 60 + local.minute
