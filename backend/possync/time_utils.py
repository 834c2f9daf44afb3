from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_utc_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Normalize a client timestamp to a UTC-naive datetime.

    - None / "" -> None
    - aware datetimes are converted to UTC; naive ones are taken as UTC
    - strings are ISO-8601, with "Z" accepted as the UTC suffix

    Raises ValueError for unparseable strings.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with millisecond precision and trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc)
    return dt_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_same_utc_day(a: datetime, b: datetime) -> bool:
    """True when both (UTC-naive or aware) datetimes fall on the same UTC calendar day."""
    return coerce_utc_datetime(a).date() == coerce_utc_datetime(b).date()
