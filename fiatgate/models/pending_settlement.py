"""
Pending settlement models.

A PendingSettlement is created once per processor payment event and held
until its risk-tier clearing period has passed, then released on-chain.
Rows are never deleted; every status change is appended to
SettlementStatusChange for audit.

Usage:
    from fiatgate.models.pending_settlement import PendingSettlement, SettlementStatus

    if record.status == SettlementStatus.PENDING:
        ...
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Index
from sqlmodel import Field, SQLModel

from fiatgate.core.typing import UTCDateTime, utc_now


class SettlementStatus(str, Enum):
    """Lifecycle of a pending settlement."""

    PENDING = "pending_settlement"
    SETTLING = "settling"  # Claimed by a sweep, release in flight
    SETTLED = "settled"
    DISPUTED = "disputed"
    FAILED = "failed"  # Retries exhausted, needs an operator


class DisputeKind(str, Enum):
    CHARGEBACK = "chargeback"
    REFUND = "refund"


class PendingSettlement(SQLModel, table=True):
    """
    A fiat payment awaiting on-chain release.

    Attributes:
        event_id: Processor event id, the idempotency key (unique)
        amount_usd: Payment amount, locked at payment time
        risk_score: Processor risk estimate, 0-100
        settlement_delay_days: Tier delay derived from risk_score at creation
        clears_at: created_at + settlement_delay_days
        retry_count: Failed release attempts so far
        claimed_at: When the current sweep claimed the record (status SETTLING)
        release_reference: Reference returned by the release service (tx hash)
    """

    __tablename__ = "pending_settlement"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True, max_length=255)

    amount_usd: float
    risk_score: int
    settlement_delay_days: int
    status: SettlementStatus = Field(default=SettlementStatus.PENDING, index=True)
    retry_count: int = Field(default=0)

    # Opaque release payload, passed through to the release service
    beneficiary_address: Optional[str] = Field(default=None, max_length=64)
    project_id: Optional[int] = None
    chain_id: Optional[int] = None
    memo: Optional[str] = None

    release_reference: Optional[str] = Field(default=None, max_length=128)
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
    clears_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))
    last_retry_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))
    settled_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime, nullable=True))

    __table_args__ = (
        # Sweep query: status + clears_at
        Index("ix_pending_settlement_due", "status", "clears_at"),
        # Stale claim detection: status + claimed_at
        Index("ix_pending_settlement_claimed", "status", "claimed_at"),
    )


class SettlementStatusChange(SQLModel, table=True):
    """Append-only status history for a pending settlement."""

    __tablename__ = "settlement_status_change"

    id: Optional[int] = Field(default=None, primary_key=True)
    settlement_id: int = Field(foreign_key="pending_settlement.id", index=True)
    from_status: Optional[str] = None  # None for the creating entry
    to_status: str
    reason: Optional[str] = None
    changed_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))


class SettlementDispute(SQLModel, table=True):
    """
    A chargeback or refund notification.

    Back-reference only: settlement_id stays empty when the dispute arrived
    before its payment, and is linked when the payment shows up.
    """

    __tablename__ = "settlement_dispute"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True, max_length=255)
    payment_event_id: str = Field(index=True, max_length=255)
    settlement_id: Optional[int] = Field(default=None, foreign_key="pending_settlement.id", index=True)
    kind: DisputeKind = Field(default=DisputeKind.CHARGEBACK)
    reason: Optional[str] = Field(default=None, max_length=100)
    status_at_receipt: Optional[str] = None
    received_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))


__all__ = [
    "PendingSettlement",
    "SettlementStatus",
    "SettlementStatusChange",
    "SettlementDispute",
    "DisputeKind",
]
