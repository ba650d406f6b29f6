"""
Datetime helpers and the injectable clock.

All marketplace timestamps are stored as naive UTC datetimes. Services never
call ``datetime.now()`` directly; they ask a ``Clock`` so background jobs can
be driven deterministically in tests by fast-forwarding a fake clock.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(ABC):
    """Time source consumed by services and reconciliation jobs"""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as a naive UTC datetime"""


class SystemClock(Clock):
    def now(self) -> datetime:
        return get_naive_utc_now()


__all__ = ["Clock", "SystemClock", "ensure_naive_datetime", "get_naive_utc_now"]
