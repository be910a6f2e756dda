"""
Database-backed circuit breaker state.

Lets an open circuit survive a deploy, so a dependency that was failing
before the restart is not hammered again straight after it.
"""

from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fiatgate.core.logging_config import get_logger
from fiatgate.core.typing import Clock, col, utc_now
from fiatgate.models.circuit_breaker_state import CircuitBreakerState

logger = get_logger(__name__)


class DatabaseCircuitStateStore:
    def __init__(self, engine: Engine, clock: Clock = utc_now):
        self.engine = engine
        self.clock = clock

    def load(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            with Session(self.engine) as session:
                db_state = session.exec(
                    select(CircuitBreakerState).where(col(CircuitBreakerState.name) == name)
                ).first()
                if db_state is None:
                    return None
                return {
                    "state": db_state.state,
                    "failure_count": db_state.failure_count,
                    "success_count": db_state.success_count,
                    "last_failure_time": db_state.last_failure_at,
                }
        except Exception as e:
            # A missing table or unreachable DB leaves the breaker closed
            logger.warning("Failed to load circuit state", circuit=name, error=str(e))
            return None

    def save(self, snapshot: Dict[str, Any]) -> None:
        name = snapshot["name"]
        with Session(self.engine) as session:
            db_state = session.exec(
                select(CircuitBreakerState).where(col(CircuitBreakerState.name) == name)
            ).first()
            if db_state is None:
                db_state = CircuitBreakerState(name=name)

            db_state.state = snapshot["state"]
            db_state.failure_count = snapshot["failure_count"]
            db_state.success_count = snapshot["success_count"]
            db_state.last_failure_at = snapshot["last_failure_time"]
            db_state.updated_at = self.clock()
            session.add(db_state)
            session.commit()
