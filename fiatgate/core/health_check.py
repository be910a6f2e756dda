"""
Unified health check.

Aggregates health from circuit breakers, the settlement backlog and the
database, with threshold-based alerting.

Usage:
    health = HealthCheck(store, registry, engine, thresholds)

    health.check_overall_health()
    # Returns: {"status": "ok", "components": {...}}
"""

from datetime import datetime
from typing import Any, Dict, Optional
import time

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session

from fiatgate.core.circuit_breaker import CircuitRegistry
from fiatgate.core.health_thresholds import HealthThresholds, ThresholdStatus, check_threshold, worst_status
from fiatgate.core.typing import Clock, utc_now
from fiatgate.models.pending_settlement import SettlementStatus
from fiatgate.services.settlement_store import PendingSettlementStore

logger = structlog.get_logger(__name__)

__all__ = ["HealthCheck", "ThresholdStatus"]


class HealthCheck:
    """
    Each check returns:
    - status: "ok", "warning", or "critical"
    - Additional context for debugging

    HTTP status should be 200 for "ok" and "warning", 503 for "critical".
    """

    def __init__(
        self,
        store: PendingSettlementStore,
        registry: CircuitRegistry,
        engine: Engine,
        thresholds: HealthThresholds,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.registry = registry
        self.engine = engine
        self.thresholds = thresholds
        self.clock = clock

    def check_circuit_health(self) -> Dict[str, Any]:
        """Open circuit = critical, probing circuit = warning."""
        try:
            return self.registry.health()
        except Exception as e:
            logger.error("Circuit health check failed", error=str(e))
            return {"status": "warning", "reason": f"Health check error: {str(e)}"}

    def check_settlement_health(self) -> Dict[str, Any]:
        """
        Checks:
        - Settlements stuck in FAILED (need an operator)
        - How long the oldest due settlement has been waiting (sweep stalled)
        """
        try:
            now = self.clock()
            counts = self.store.status_counts()
            totals = self.store.pending_totals()

            failed = counts[SettlementStatus.FAILED.value]
            failed_status = check_threshold(failed, self.thresholds.failed_settlements)

            overdue_hours = _overdue_hours(totals["next_clears_at"], now)
            overdue_status = check_threshold(overdue_hours, self.thresholds.overdue_hours)

            next_clears_at = totals["next_clears_at"]
            return {
                "status": worst_status([failed_status, overdue_status]),
                "counts": counts,
                "pending_count": totals["pending_count"],
                "pending_usd": totals["pending_usd"],
                "next_clears_at": next_clears_at.isoformat() if next_clears_at else None,
                "overdue_hours": round(overdue_hours, 1),
                "threshold_failed_warn": int(self.thresholds.failed_settlements.warning),
                "threshold_failed_crit": int(self.thresholds.failed_settlements.critical),
            }
        except Exception as e:
            logger.error("Settlement health check failed", error=str(e))
            return {"status": "critical", "reason": f"Health check error: {str(e)}"}

    def check_database_health(self) -> Dict[str, Any]:
        """Simple SELECT 1 to verify connection."""
        try:
            start = time.perf_counter()
            with Session(self.engine) as session:
                session.exec(text("SELECT 1"))  # type: ignore[call-overload]
            duration_ms = (time.perf_counter() - start) * 1000

            return {
                "status": check_threshold(duration_ms, self.thresholds.db_connection_ms),
                "connection_time_ms": round(duration_ms, 1),
                "threshold_warn_ms": self.thresholds.db_connection_ms.warning,
                "threshold_crit_ms": self.thresholds.db_connection_ms.critical,
            }
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"status": "critical", "reason": f"Database error: {str(e)}"}

    def check_overall_health(self) -> Dict[str, Any]:
        """Worst status of all components."""
        circuits = self.check_circuit_health()
        settlements = self.check_settlement_health()
        database = self.check_database_health()

        return {
            "status": worst_status([circuits["status"], settlements["status"], database["status"]]),
            "timestamp": self.clock().isoformat(),
            "components": {
                "circuits": circuits,
                "settlements": settlements,
                "database": database,
            },
        }


def _overdue_hours(next_clears_at: Optional[datetime], now: datetime) -> float:
    if next_clears_at is None or next_clears_at > now:
        return 0.0
    return (now - next_clears_at).total_seconds() / 3600
