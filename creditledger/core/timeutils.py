"""UTC time helpers.

All ledger timestamps are stored as UTC. Some backends (SQLite) hand back
naive datetimes, so reads go through ``ensure_utc`` before comparison.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now is not None else utc_now()
