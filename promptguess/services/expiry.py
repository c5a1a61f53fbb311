"""Clock source and expiry policy.

Expiry is applied lazily: services ask the policy on every read whether an
instance is overdue and persist the ``expired`` transition at that point.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utcnow()


@dataclass(frozen=True)
class ExpiryPolicy:
    """An instance expires once its age strictly exceeds ``ttl``."""

    ttl: timedelta

    @classmethod
    def days(cls, days: int) -> "ExpiryPolicy":
        return cls(ttl=timedelta(days=days))

    def deadline(self, created_at: datetime) -> datetime:
        return ensure_utc(created_at) + self.ttl

    def is_expired(self, created_at: datetime, now: datetime) -> bool:
        return ensure_utc(now) > self.deadline(created_at)

    def cutoff(self, now: datetime) -> datetime:
        """Creation time before which instances are overdue."""
        return ensure_utc(now) - self.ttl
