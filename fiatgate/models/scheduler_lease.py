"""
Scheduler lease model.

One row per named lease. A holder owns the lease until expires_at; an
expired lease can be taken over by anyone, so a crashed sweeper never
blocks the next one for longer than the lease TTL.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from fiatgate.core.typing import UTCDateTime


class SchedulerLease(SQLModel, table=True):
    __tablename__ = "scheduler_lease"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # e.g. "settlement_sweep"
    holder: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))
