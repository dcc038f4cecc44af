import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIME_OF_DAY_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")
OFFSET_RE = re.compile(r"^(?:UTC|GMT)?\s*([+-])(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_time_of_day(value) -> Optional[time]:
    """Parse "H:MM", "HH:MM" or "HH:MM:SS". Returns None when unusable."""
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if not isinstance(value, str):
        return None

    m = TIME_OF_DAY_RE.match(value)
    if not m:
        return None

    hour, minute = int(m.group(1)), int(m.group(2))
    second = int(m.group(3) or 0)
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        return None
    return time(hour, minute, second)


def _parse_offset(name: str) -> Optional[tzinfo]:
    m = OFFSET_RE.match(name)
    if not m:
        return None
    sign, hours, minutes = m.group(1), int(m.group(2)), int(m.group(3) or 0)
    if hours > 14 or minutes >= 60:
        return None
    delta = timedelta(hours=hours, minutes=minutes)
    return timezone(-delta if sign == "-" else delta)


def _lookup_zone(name) -> Optional[tzinfo]:
    if not isinstance(name, str):
        return None
    name = name.strip()
    if not name:
        return None
    if name.upper() in ("UTC", "Z", "GMT"):
        return timezone.utc

    offset = _parse_offset(name)
    if offset is not None:
        return offset

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def resolve_zone(name: Optional[str], default: str = "UTC") -> tzinfo:
    """Map an IANA name or a fixed offset ("+03:00", "UTC+3") to a tzinfo.

    Never raises: unknown names fall back to ``default``, and an unusable
    default falls back to UTC.
    """
    return _lookup_zone(name) or _lookup_zone(default) or timezone.utc


def is_due(
    now_utc: datetime,
    notify_at: time,
    last_sent_at: Optional[datetime],
    tz: tzinfo,
) -> bool:
    """True once the local notify time has been reached on a local day that has
    not had a delivery yet."""
    now_local = as_utc(now_utc).astimezone(tz)
    if now_local.time() < notify_at:
        return False

    if last_sent_at is None:
        return True

    last_local = as_utc(last_sent_at).astimezone(tz)
    return last_local.date() < now_local.date()
