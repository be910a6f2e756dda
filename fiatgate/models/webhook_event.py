"""
Model for tracking processed webhook events to ensure idempotency.
"""
from typing import Optional
from datetime import datetime
from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from fiatgate.core.typing import UTCDateTime, utc_now


class WebhookEvent(SQLModel, table=True):
    """
    Tracks processed webhook events to prevent duplicate processing.

    Payment processors retry deliveries they consider failed, so every event
    id is recorded once it has been handled.
    """
    __tablename__ = "webhook_event"

    id: Optional[int] = Field(default=None, primary_key=True)

    event_id: str = Field(unique=True, index=True)
    event_type: str = Field(index=True)  # e.g. "payment_intent.succeeded", "charge.dispute.created"
    source: str = Field(default="processor")

    processed_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
    status: str = Field(default="processed")  # "processed", "failed", "ignored"

    settlement_id: Optional[int] = Field(default=None, nullable=True, index=True)
    error_message: Optional[str] = Field(default=None, nullable=True)
