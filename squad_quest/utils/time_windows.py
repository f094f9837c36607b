from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

HOUR = 3600


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_datetime(value):
    """Coerce a stored timestamp (datetime, ISO string, epoch ms) to an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def hours_between(earlier, later) -> float:
    return (later - earlier).total_seconds() / HOUR


def week_start(now: datetime, tz_name: str) -> datetime:
    """Monday 00:00 of the week containing ``now``, in ``tz_name``."""
    local = now.astimezone(ZoneInfo(tz_name))
    monday = local - timedelta(days=local.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def is_showdown(now: datetime, tz_name: str, weekday: int = 6, start_hour: int = 21) -> bool:
    """Sunday evening bonus window (from ``start_hour`` until midnight local time)."""
    local = now.astimezone(ZoneInfo(tz_name))
    return local.weekday() == weekday and local.hour >= start_hour
