"""
Chargeback and refund handling.

A dispute holds back a payment that has not been released yet. Value that
was already released on-chain cannot be clawed back from here; those
disputes are still recorded and flagged for manual remediation, never raised.
"""

from enum import Enum
from typing import Optional

from fiatgate.core.errors import ConflictError, capture_message
from fiatgate.core.logging_config import get_logger
from fiatgate.models.pending_settlement import DisputeKind, SettlementStatus
from fiatgate.schemas import ChargeRefunded, DisputeCreated
from fiatgate.services.settlement_store import PendingSettlementStore

logger = get_logger(__name__)


class DisputeOutcome(str, Enum):
    DISPUTED = "disputed"  # Held back before release
    SETTLED_CONFLICT = "settled_conflict"  # Already released, needs manual remediation
    ALREADY_DISPUTED = "already_disputed"
    UNCHANGED = "unchanged"  # Record is FAILED, dispute stored for the operator
    ORPHANED = "orphaned"  # Payment not seen yet
    DUPLICATE = "duplicate"  # Same dispute event delivered again


class DisputeHandler:
    def __init__(self, store: PendingSettlementStore):
        self.store = store

    def handle_dispute(self, event: DisputeCreated) -> DisputeOutcome:
        return self._handle(event.event_id, event.payment_event_id, DisputeKind.CHARGEBACK, event.reason)

    def handle_refund(self, event: ChargeRefunded) -> DisputeOutcome:
        return self._handle(event.event_id, event.payment_event_id, DisputeKind.REFUND, "refund")

    def _handle(
        self,
        event_id: str,
        payment_event_id: str,
        kind: DisputeKind,
        reason: Optional[str],
    ) -> DisputeOutcome:
        try:
            recording = self.store.record_dispute(event_id, payment_event_id, kind, reason)
        except ConflictError:
            logger.info("Dispute already recorded", event_id=event_id, payment_event_id=payment_event_id)
            return DisputeOutcome.DUPLICATE

        record = recording.settlement
        if record is None:
            logger.warning(
                "Dispute for unknown payment, stored until the payment arrives",
                event_id=event_id,
                payment_event_id=payment_event_id,
                kind=kind.value,
            )
            return DisputeOutcome.ORPHANED

        previous = recording.previous_status
        if previous == SettlementStatus.SETTLED:
            conflict = ConflictError(
                "Dispute received for a settled payment, manual on-chain remediation required",
                metadata={
                    "settlement_id": record.id,
                    "payment_event_id": payment_event_id,
                    "dispute_event_id": event_id,
                    "kind": kind.value,
                    "amount_usd": record.amount_usd,
                    "release_reference": record.release_reference,
                },
            )
            capture_message(
                conflict.message,
                level="error",
                context={"code": conflict.code, **conflict.metadata},
                tags={"conflict": "dispute_after_settlement"},
            )
            return DisputeOutcome.SETTLED_CONFLICT

        if previous is None:
            if record.status == SettlementStatus.DISPUTED:
                return DisputeOutcome.ALREADY_DISPUTED
            logger.warning(
                "Dispute for a failed settlement, status unchanged",
                settlement_id=record.id,
                event_id=event_id,
                kind=kind.value,
            )
            return DisputeOutcome.UNCHANGED

        if previous == SettlementStatus.SETTLING:
            logger.warning(
                "Dispute arrived during an in-flight release",
                settlement_id=record.id,
                event_id=event_id,
            )
        else:
            logger.info("Settlement disputed before release", settlement_id=record.id, kind=kind, previous_status=previous)
        return DisputeOutcome.DISPUTED
