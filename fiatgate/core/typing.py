"""
Type helpers for SQLAlchemy/SQLModel and time handling.

SQLModel fields are declared with Python types (e.g., `status: str`) but at the
class level they're InstrumentedAttribute descriptors with column methods
like .desc(), .in_(). `col()` tells the type checker so.

Timestamps are always timezone-aware UTC in Python. `UTCDateTime` stores them
as naive UTC and re-attaches the zone on load, so SQLite (tests) and
PostgreSQL (production) round-trip the same values.
"""

from typing import TYPE_CHECKING, Callable, Optional, TypeVar
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")

# Injected time source. Production uses utc_now; tests pass a controllable clock.
Clock = Callable[[], datetime]


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    Usage:
        select(PendingSettlement).order_by(col(PendingSettlement.clears_at).asc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC. Naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime column that always hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return as_utc(value)


__all__ = ["Clock", "col", "utc_now", "as_utc", "UTCDateTime"]
