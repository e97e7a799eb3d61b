from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    # Normalize to UTC-naive
    if dt.tzinfo is None:
        # interpret naive as UTC
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


# Epoch values above this are taken to be milliseconds (year ~2286 in seconds).
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


def normalize_datetime(value: Any) -> Optional[datetime]:
    """
    Normalize any stored or submitted date representation to UTC-naive datetime.

    Stored data mixes several shapes because of migration history; this is the
    single place they are reconciled:

    - None / "" -> None
    - datetime (aware -> converted to UTC; naive -> taken as UTC)
    - date -> midnight UTC
    - ISO-8601 string (with Z, offset, or naive)
    - epoch seconds or milliseconds (int / float / numeric string)
    - timestamp objects: {"seconds": s, "nanoseconds": n} or {"_seconds": s, "_nanoseconds": n}

    Raises ValueError for anything else.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    if isinstance(value, bool):
        raise ValueError("invalid datetime value")

    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) >= _EPOCH_MILLIS_THRESHOLD:
            seconds = seconds / 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)

    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError("timestamp object missing seconds")
        nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
        return normalize_datetime(int(seconds)).replace(microsecond=int(nanos) // 1000)

    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            return normalize_datetime(float(s))
        except ValueError:
            pass
        try:
            return parse_iso_datetime(s)
        except ValueError:
            raise ValueError(f"invalid datetime value: {value!r}")

    raise ValueError(f"invalid datetime value: {value!r}")


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
