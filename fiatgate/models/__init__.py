from .pending_settlement import (
    PendingSettlement,
    SettlementStatus,
    SettlementStatusChange,
    SettlementDispute,
    DisputeKind,
)
from .webhook_event import WebhookEvent
from .circuit_breaker_state import CircuitBreakerState
from .scheduler_lease import SchedulerLease

__all__ = [
    "PendingSettlement",
    "SettlementStatus",
    "SettlementStatusChange",
    "SettlementDispute",
    "DisputeKind",
    "WebhookEvent",
    "CircuitBreakerState",
    "SchedulerLease",
]
