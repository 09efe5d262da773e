from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from iquiz.core.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any, field: str = "time") -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}")
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip("-").isdigit():
                return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return as_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError(f"Invalid {field}", error=str(exc)) from exc
    raise ValidationError(f"Invalid {field}")


def parse_time_range(start: Any, end: Any) -> Tuple[datetime, datetime]:
    """Both ends are required and start must be strictly before end."""
    if start in (None, "") or end in (None, ""):
        raise ValidationError("Missing start and/or end time")
    try:
        start_time = parse_timestamp(start, "start time")
        end_time = parse_timestamp(end, "end time")
    except ValidationError as exc:
        raise ValidationError("Invalid start and/or end time", error=exc.message) from exc
    if start_time >= end_time:
        raise ValidationError("Invalid start and/or end time", error="start time must be before end time")
    return start_time, end_time


def to_iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
