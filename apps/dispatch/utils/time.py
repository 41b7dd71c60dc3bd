"""UTC time helpers (timezone-aware calculation, naive storage)."""
from __future__ import annotations

from datetime import datetime, timezone, date
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return a UTC timestamp without tzinfo for legacy DB columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_reference(now_utc: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC timestamp to an aware datetime in the reference zone."""
    return now_utc.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))


def reference_day(now_utc: datetime, tz_name: str) -> date:
    """Calendar date of ``now_utc`` in the reference zone."""
    return to_reference(now_utc, tz_name).date()


def reference_day_start_utc(now_utc: datetime, tz_name: str) -> datetime:
    """Start of the reference-zone day containing ``now_utc``, as naive UTC."""
    local = to_reference(now_utc, tz_name)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)
