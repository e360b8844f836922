from datetime import datetime, time, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize to tz-aware UTC. Naive values (e.g. read back from SQLite) are taken as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """
    Parse a vendor timestamp (ISO-8601 string, datetime or epoch seconds/millis).
    Returns None for anything unresolvable. Never falls back to now.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 10_000_000_000 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def parse_hhmm(value: str) -> time:
    """
    "HH:MM" or "HHMM" -> time.
    """
    v = value.strip().replace(":", "")
    if len(v) != 4 or not v.isdigit():
        raise ValueError(f"Bad HH:MM value: {value}")
    return time(int(v[:2]), int(v[2:]))


def in_daily_window(now: datetime, start: time, end: time, tz: str) -> bool:
    """
    True when the local wall-clock time of `now` in `tz` is within [start, end).
    A window whose end is before its start wraps midnight.
    """
    local = now.astimezone(ZoneInfo(tz)).time().replace(tzinfo=None)
    if start <= end:
        return start <= local < end
    return local >= start or local < end
