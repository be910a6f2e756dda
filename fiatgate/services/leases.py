"""
Named leases that keep settlement sweeps from overlapping.

APScheduler's max_instances=1 only covers a single process. When several
API replicas run the scheduler (or the cron route fires during a scheduled
sweep), the lease decides which one sweeps. A lease expires after its TTL
so a crashed holder never blocks the next sweep for long.

Usage:
    lease = DatabaseLease(engine)
    if lease.acquire("settlement_sweep", holder, ttl_seconds=900):
        try:
            ...
        finally:
            lease.release("settlement_sweep", holder)
"""

from datetime import timedelta
from typing import Protocol

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from fiatgate.core.logging_config import get_logger
from fiatgate.core.typing import Clock, col, utc_now
from fiatgate.models.scheduler_lease import SchedulerLease

logger = get_logger(__name__)


class Lease(Protocol):
    def acquire(self, name: str, holder: str, ttl_seconds: float) -> bool: ...

    def release(self, name: str, holder: str) -> None: ...


class DatabaseLease:
    """Lease stored in the scheduler_lease table, taken with a conditional UPDATE."""

    def __init__(self, engine: Engine, clock: Clock = utc_now):
        self.engine = engine
        self.clock = clock

    def acquire(self, name: str, holder: str, ttl_seconds: float) -> bool:
        now = self.clock()
        self._ensure_row(name)

        stmt = (
            update(SchedulerLease)
            .execution_options(synchronize_session=False)
            .where(
                col(SchedulerLease.name) == name,
                or_(
                    col(SchedulerLease.holder).is_(None),
                    col(SchedulerLease.holder) == holder,
                    col(SchedulerLease.expires_at) <= now,
                ),
            )
            .values(holder=holder, expires_at=now + timedelta(seconds=ttl_seconds))
        )
        with Session(self.engine) as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            session.commit()
            acquired = result.rowcount == 1

        if not acquired:
            logger.info("Lease held elsewhere", lease=name, holder=holder)
        return acquired

    def release(self, name: str, holder: str) -> None:
        stmt = (
            update(SchedulerLease)
            .execution_options(synchronize_session=False)
            .where(col(SchedulerLease.name) == name, col(SchedulerLease.holder) == holder)
            .values(holder=None, expires_at=None)
        )
        with Session(self.engine) as session:
            session.exec(stmt)  # type: ignore[call-overload]
            session.commit()

    def _ensure_row(self, name: str) -> None:
        with Session(self.engine) as session:
            existing = session.exec(select(SchedulerLease).where(col(SchedulerLease.name) == name)).first()
            if existing is not None:
                return
            session.add(SchedulerLease(name=name))
            try:
                session.commit()
            except IntegrityError:
                # Another process created it first
                session.rollback()

