"""Helpers for the provider's {dateTime|date} time nodes."""
from datetime import datetime
from typing import Any, Optional

import pytz


def parse_event_time(node: Optional[dict[str, Any]]) -> Optional[datetime]:
    """Return a timezone-aware datetime for a start/end node.

    All-day nodes (``{"date": "2026-03-01"}``) map to midnight UTC.
    """
    if not node:
        return None
    if node.get("dateTime"):
        value = datetime.fromisoformat(node["dateTime"].replace("Z", "+00:00"))
        if value.tzinfo is None:
            tz = pytz.timezone(node.get("timeZone") or "UTC")
            value = tz.localize(value)
        return value.astimezone(pytz.utc)
    if node.get("date"):
        return pytz.utc.localize(datetime.strptime(node["date"], "%Y-%m-%d"))
    return None


def to_rfc3339(value: datetime) -> str:
    """Format an aware datetime the way the provider expects timeMin/timeMax."""
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(pytz.utc).isoformat().replace("+00:00", "Z")


def same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    """Compare two datetimes, treating naive values (SQLite round-trips) as UTC."""
    if a is None or b is None:
        return a is b
    if a.tzinfo is None:
        a = pytz.utc.localize(a)
    if b.tzinfo is None:
        b = pytz.utc.localize(b)
    return a == b
