from datetime import datetime, timezone
from typing import Optional


def ensure_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert any datetime to timezone-aware UTC datetime.

    Args:
        dt: A datetime object (naive or aware) or None

    Returns:
        A timezone-aware datetime, or None if input is None

    Behavior:
        - If input is None: returns None
        - If input is already timezone-aware: returns as-is
        - If input is timezone-naive: assumes UTC and adds timezone.utc

    SQLite drops timezone information, so values read back from the job
    table come out naive.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None and dt.tzinfo.utcoffset(dt) is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)
