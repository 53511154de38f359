"""
Type helpers for SQLAlchemy/SQLModel compatibility with type checkers.

SQLModel fields are declared with Python types (e.g., `ano: int`) but at the
class level they're actually InstrumentedAttribute descriptors with SQLAlchemy
column methods like .desc(), .in_(), etc. This module bridges that gap.
"""

from typing import TYPE_CHECKING, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        select(SyncRun).where(col(SyncRun.started_at) < cutoff)
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)
