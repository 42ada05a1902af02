from datetime import date, datetime, timezone

import pytz


def app_tz(name: str = "UTC"):
    return pytz.timezone(name)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(dt: datetime, tz_name: str = "UTC") -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(app_tz(tz_name))


def local_today(now: datetime, tz_name: str = "UTC") -> date:
    """Calendar date of a naive-UTC instant in the application timezone."""
    return to_local(now, tz_name).date()
