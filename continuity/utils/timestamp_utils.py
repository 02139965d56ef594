"""
Timestamp utilities for consistent time handling across the store and archive.
"""

import time
from datetime import datetime, timezone
from typing import Optional

# Width of a time-index bucket in seconds
TIME_BUCKET_SECONDS = 3600


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to a UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_epoch(moment: datetime) -> float:
    """Convert a datetime to Unix seconds, treating naive values as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def time_bucket(moment: datetime, width: int = TIME_BUCKET_SECONDS) -> str:
    """Key of the time-index bucket that contains ``moment``.

    Args:
        moment: Point in time to bucket
        width: Bucket width in seconds

    Returns:
        Bucket start as a seconds string
    """
    epoch = int(to_epoch(moment))
    return str(epoch - epoch % width)
