from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from flask import current_app, has_app_context


def utcnow() -> datetime:
    """
    Server-side 'now' in UTC (naive, canonical).

    An application may plug in its own clock through the CLOCK config key.
    """
    if has_app_context():
        clock = current_app.config.get("CLOCK")
        if clock is not None:
            return clock()
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today() -> date:
    return utcnow().date()


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


def to_iso_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_iso_date(value) -> Optional[date]:
    """
    Normalize a calendar date input.

    - None / "" -> None
    - date -> as is (datetime -> its date part)
    - "YYYY-MM-DD" -> date
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    return date.fromisoformat(s[:10])
