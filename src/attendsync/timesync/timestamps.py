"""
Timestamp parsing and authoritative-time resolution.

All datetimes inside the service are timezone-aware UTC. Client input may
be an ISO-8601 string (with or without offset; no offset means UTC), epoch
milliseconds, or an aware/naive ``datetime``.
"""
import math
from datetime import datetime, timezone
from typing import Optional, Union

from attendsync.errors import InvalidTimestamp

TimestampInput = Union[str, int, float, datetime, None]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Current server time, UTC."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: TimestampInput, *, field: str = "timestamp") -> Optional[datetime]:
    """
    Normalise a client-supplied instant to aware UTC.

    Returns None for None/empty input. Raises InvalidTimestamp for anything
    unparseable, non-finite, or before the Unix epoch.
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise InvalidTimestamp(f"{field}: boolean is not a timestamp", field=field)

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            raise InvalidTimestamp(f"{field}: {value!r} is not a valid epoch value", field=field)
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidTimestamp(f"{field}: {value!r} is out of range", field=field) from exc
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidTimestamp(f"{field}: {value!r} is not ISO-8601", field=field) from exc
    else:
        raise InvalidTimestamp(f"{field}: unsupported type {type(value).__name__}", field=field)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError) as exc:
        raise InvalidTimestamp(f"{field}: {value!r} is out of range", field=field) from exc
    if parsed < EPOCH:
        raise InvalidTimestamp(f"{field}: {value!r} predates the Unix epoch", field=field)
    return parsed


def resolve_authoritative_timestamp(
    synced_timestamp: Optional[datetime],
    candidate_timestamp: Optional[datetime],
    server_now: datetime,
) -> datetime:
    """
    Pick the instant a clock transition is recorded at.

    Precedence: drift-corrected timestamp from a synced client, then the
    plain client timestamp, then server time.
    """
    if synced_timestamp is not None:
        return synced_timestamp
    if candidate_timestamp is not None:
        return candidate_timestamp
    return server_now


def format_duration(seconds: float) -> str:
    """HH:MM:SS; hours are not wrapped at 24."""
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
