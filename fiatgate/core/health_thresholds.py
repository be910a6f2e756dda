"""
Health threshold configuration.

Defines thresholds for alerting on settlement gate degradation.

Usage:
    from fiatgate.core.health_thresholds import HealthThresholds, check_threshold

    thresholds = HealthThresholds.from_settings(settings)
    status = check_threshold(value=failed_count, threshold=thresholds.failed_settlements)
    # Returns: "ok", "warning", or "critical"
"""

from dataclasses import dataclass
from typing import Iterable, Literal
import os

__all__ = [
    "Threshold",
    "HealthThresholds",
    "check_threshold",
    "worst_status",
    "ThresholdStatus",
]

ThresholdStatus = Literal["ok", "warning", "critical"]


@dataclass(frozen=True)
class Threshold:
    """
    Health threshold with warning and critical levels.

    Attributes:
        warning: Value at which to warn (degraded)
        critical: Value at which to alert (unhealthy)
        unit: Human-readable unit for display
        name: Optional name for logging
    """

    warning: float
    critical: float
    unit: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.name or 'threshold'}: warn={self.warning}{self.unit}, crit={self.critical}{self.unit}"


def check_threshold(value: float, threshold: Threshold) -> ThresholdStatus:
    """
    Check if value exceeds threshold.

    Returns:
        "ok" if below warning
        "warning" if at/above warning but below critical
        "critical" if at/above critical
    """
    if value >= threshold.critical:
        return "critical"
    elif value >= threshold.warning:
        return "warning"
    return "ok"


def worst_status(statuses: Iterable[str]) -> ThresholdStatus:
    statuses = list(statuses)
    if "critical" in statuses:
        return "critical"
    if "warning" in statuses:
        return "warning"
    return "ok"


def _env_float(key: str, default: float) -> float:
    """Get float from environment or return default."""
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class HealthThresholds:
    failed_settlements: Threshold
    """Settlements in FAILED awaiting an operator"""

    overdue_hours: Threshold
    """Hours the oldest due settlement has waited past clears_at (sweep not running)"""

    db_connection_ms: Threshold

    @classmethod
    def from_settings(cls, settings) -> "HealthThresholds":
        return cls(
            failed_settlements=Threshold(
                warning=settings.FAILED_SETTLEMENTS_WARN,
                critical=settings.FAILED_SETTLEMENTS_CRITICAL,
                unit="records",
                name="failed_settlements",
            ),
            overdue_hours=Threshold(
                warning=_env_float("THRESHOLD_SETTLEMENT_OVERDUE_WARN", 2.0),
                critical=_env_float("THRESHOLD_SETTLEMENT_OVERDUE_CRIT", 6.0),
                unit="hours",
                name="settlement_overdue_hours",
            ),
            db_connection_ms=Threshold(
                warning=_env_float("THRESHOLD_DB_CONN_WARN", 100.0),
                critical=_env_float("THRESHOLD_DB_CONN_CRIT", 500.0),
                unit="ms",
                name="db_connection_time",
            ),
        )
