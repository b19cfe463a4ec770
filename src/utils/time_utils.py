from datetime import datetime, timedelta, timezone, time
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

"""
Time helpers. The engine stores naive UTC datetimes (datetime.utcnow());
local wall-clock math happens in an IANA timezone and is converted back.
"""


def parse_hhmm(value: Optional[str], default: str = "09:00") -> Tuple[int, int]:
    """
    "HH:MM" -> (hour, minute); malformed values fall back to the default
    """
    for candidate in (value, default):
        if not candidate:
            continue
        try:
            hour_str, minute_str = candidate.strip().split(":", 1)
            hour, minute = int(hour_str), int(minute_str)
            if 0 <= hour <= 23 and 0 <= minute <= 59:
                return hour, minute
        except ValueError:
            continue
    return 9, 0


def get_zone(name: Optional[str]) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_local(now_utc: datetime, zone: ZoneInfo) -> datetime:
    return now_utc.replace(tzinfo=timezone.utc).astimezone(zone)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def next_local_time(now_utc: datetime, hour: int, minute: int, timezone_name: Optional[str] = None) -> datetime:
    """
    Next occurrence of hour:minute on the wall clock of the timezone,
    strictly after now. Returned as naive UTC.
    """
    zone = get_zone(timezone_name)
    local_now = to_local(now_utc, zone)
    candidate = datetime.combine(local_now.date(), time(hour, minute), tzinfo=zone)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), time(hour, minute), tzinfo=zone)
    return to_naive_utc(candidate)


def quiet_window_end(now_utc: datetime, start: Optional[str], end: Optional[str], timezone_name: Optional[str] = None) -> Optional[datetime]:
    """
    If now falls inside the daily quiet window [start, end) return the
    naive UTC time the window ends, otherwise None. Windows may wrap
    midnight (e.g. 22:00-08:00).
    """
    if not start or not end:
        return None
    start_hour, start_minute = parse_hhmm(start)
    end_hour, end_minute = parse_hhmm(end)
    start_t, end_t = time(start_hour, start_minute), time(end_hour, end_minute)
    if start_t == end_t:
        return None

    zone = get_zone(timezone_name)
    local_now = to_local(now_utc, zone)
    now_t = local_now.time().replace(tzinfo=None)

    if start_t < end_t:
        inside = start_t <= now_t < end_t
    else:
        inside = now_t >= start_t or now_t < end_t
    if not inside:
        return None
    return next_local_time(now_utc, end_hour, end_minute, timezone_name)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    ISO-8601 date or datetime as naive UTC, None when unparseable
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_naive_utc(parsed)
