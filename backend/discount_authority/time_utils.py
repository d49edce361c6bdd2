from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_after(seconds: float, now: Optional[datetime] = None) -> datetime:
    """Naive UTC instant `seconds` after `now` (defaults to utcnow())."""
    return (now or utcnow()) + timedelta(seconds=seconds)


def iso_week_key(when: Optional[datetime] = None) -> str:
    """
    Budget period key for the ISO week containing `when`.

    Weeks run Monday-Sunday, e.g. "2026-W42".
    """
    year, week, _ = (when or utcnow()).isocalendar()
    return f"{year}-W{week:02d}"


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
