"""
Datetime helper utilities to ensure consistent timezone handling across the engine.

CRITICAL: All model columns store timezone-naive UTC datetimes (DateTime(timezone=False)).
External sources report unix seconds; convert through these helpers so that
naive and aware datetimes are never compared.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize an order timestamp to the naive UTC form stored in the database.

    Example:
        >>> paid_at = datetime(2026, 1, 1, 20, 0, tzinfo=timezone(timedelta(hours=8)))
        >>> ensure_naive_datetime(paid_at)
        datetime.datetime(2026, 1, 1, 12, 0)
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time as naive datetime, the format stored in every table"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix(dt: Optional[datetime]) -> Optional[int]:
    """Naive UTC datetime to unix seconds"""
    if dt is None:
        return None
    return int(ensure_naive_datetime(dt).replace(tzinfo=timezone.utc).timestamp())
