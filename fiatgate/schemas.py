from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from fiatgate.models.pending_settlement import DisputeKind, SettlementStatus


# Inbound processor events (transport independent)

class PaymentSucceeded(BaseModel):
    event_id: str  # Idempotency key for the settlement record
    amount_usd: float
    risk_score: int
    beneficiary_address: Optional[str] = None
    project_id: Optional[int] = None
    chain_id: Optional[int] = None
    memo: Optional[str] = None

class DisputeCreated(BaseModel):
    event_id: str
    payment_event_id: str  # event_id of the disputed PaymentSucceeded
    reason: Optional[str] = None

class ChargeRefunded(BaseModel):
    event_id: str
    payment_event_id: str


# Responses

class ErrorOut(BaseModel):
    code: str
    message: str
    metadata: Dict[str, Any] = {}

class SettlementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: str
    amount_usd: float
    risk_score: int
    settlement_delay_days: int
    status: SettlementStatus
    retry_count: int
    clears_at: datetime
    created_at: datetime
    settled_at: Optional[datetime] = None
    release_reference: Optional[str] = None
    last_error: Optional[str] = None

class StatusChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    changed_at: datetime

class DisputeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    payment_event_id: str
    kind: DisputeKind
    reason: Optional[str] = None
    status_at_receipt: Optional[str] = None
    received_at: datetime

class SettlementDetailOut(SettlementOut):
    history: List[StatusChangeOut] = []
    disputes: List[DisputeOut] = []

class SweepResultOut(BaseModel):
    skipped: bool
    due: int
    claimed: int
    settled: int
    retried: int
    failed: int
    deferred: int
    disputed: int
    reclaimed: int
    duration_ms: float

class CircuitStatsOut(BaseModel):
    name: str
    state: str
    failure_count: int
    success_count: int
    last_failure_time: Optional[datetime] = None
    failure_threshold: int
    reset_timeout: float
    success_threshold: int
