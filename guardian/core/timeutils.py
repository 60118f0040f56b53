import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from guardian.logging_utils import get_logger

logger = get_logger("timeutils")

DB_FORMAT = "%Y-%m-%d %H:%M:%S"
_OFFSET_RE = re.compile(r"^([+-])(\d{2}):(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db(dt: datetime) -> str:
    """UTC 'YYYY-MM-DD HH:MM:SS' string as stored in SQLite."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(DB_FORMAT)


def iso_now() -> str:
    return to_db(utc_now())


def from_db(value) -> datetime | None:
    """Parse a stored timestamp back to an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).replace("T", " ").rstrip("Z")
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_timezone(value: str | None):
    """
    Accepts a UTC offset ('+02:00', '-05:30') or an IANA name
    ('Europe/Paris'). Anything else falls back to UTC.
    """
    value = (value or "").strip()
    if not value:
        return timezone.utc

    m = _OFFSET_RE.match(value)
    if m:
        sign, hours, minutes = m.groups()
        delta = timedelta(hours=int(hours), minutes=int(minutes))
        if delta >= timedelta(hours=24):
            logger.warning(f"Invalid timezone offset '{value}', using UTC")
            return timezone.utc
        return timezone(-delta if sign == "-" else delta)

    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{value}', using UTC")
        return timezone.utc


def now_in_timezone(tz_value: str | None, now: datetime | None = None) -> datetime:
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(parse_timezone(tz_value))
