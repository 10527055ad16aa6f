"""
Single source for "now" time. All persisted timestamps are UTC ISO-8601.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso(timespec: str = "seconds") -> str:
    """Return current UTC time in ISO format (seconds by default)."""
    return now_utc().isoformat(timespec=timespec)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO timestamp or SQLite CURRENT_TIMESTAMP text ('YYYY-MM-DD HH:MM:SS').
    Naive values are taken as UTC. Returns None for empty or unparseable input.
    """
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
