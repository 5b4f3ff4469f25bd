"""Timezone-aware UTC timestamp utilities.

Every timestamp written to the state database goes through these helpers,
so stored values always carry a +00:00 offset and sort lexically in time
order.
"""

from datetime import datetime, timezone
from typing import Optional


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def parse_timestamp(iso_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp, assuming UTC if no timezone info.

    SQLite's CURRENT_TIMESTAMP produces naive "YYYY-MM-DD HH:MM:SS" strings;
    those are treated as UTC as well. Empty values return None.
    """
    if not iso_str:
        return None
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
