"""
Circuit breaker state persistence model.

Stores circuit breaker states to survive deploys/restarts, so a failing
dependency is not hammered again right after a restart.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from fiatgate.core.typing import UTCDateTime, utc_now


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    __tablename__ = "circuit_breaker_state"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # e.g. "release", "object-storage"
    state: str = Field(default="closed")  # "closed", "open", "half_open"
    failure_count: int = Field(default=0)
    success_count: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
