"""
Retry backoff policy.

A bounded table indexed by ``retry_count``: the last entry is the flat
ceiling every later attempt uses.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from giftpipe.core.config import get_settings


def compute_retry_delay(
    retry_count: int, backoff: Optional[Sequence[int]] = None
) -> timedelta:
    """
    Delay before the next attempt for an order that has failed ``retry_count`` times.

    Args:
        retry_count: Attempts already made (negative values count as 0)
        backoff: Delay table in seconds (defaults to settings)

    Returns:
        Delay as a timedelta
    """
    table = list(backoff) if backoff is not None else get_settings().retry_backoff_seconds
    index = min(max(retry_count, 0), len(table) - 1)
    return timedelta(seconds=table[index])


def compute_next_retry_at(
    retry_count: int,
    now: Optional[datetime] = None,
    backoff: Optional[Sequence[int]] = None,
) -> datetime:
    """``now + delay[min(retry_count, len(delay) - 1)]``."""
    now = now or datetime.now(timezone.utc)
    return now + compute_retry_delay(retry_count, backoff)
