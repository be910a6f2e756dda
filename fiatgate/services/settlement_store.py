"""
Pending Settlement Store

Durable record of fiat payments awaiting on-chain release. Records survive
restarts; every status change is a conditional UPDATE so concurrent
sweepers and webhook handlers cannot both move the same record.

Usage:
    store = PendingSettlementStore(engine)

    # Webhook: create once per processor event
    record = store.create(PaymentSucceeded(event_id="pi_1", amount_usd=25.0, risk_score=35))

    # Sweep: claim, release, then settle or retry
    for record in store.due_for_release():
        if store.claim_for_release(record.id):
            try:
                reference = release(record)
                store.mark_settled(record.id, reference)
            except Exception as e:
                store.increment_retry(record.id, str(e))
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from fiatgate.core.errors import ConflictError, NotFoundError, ValidationError, capture_message
from fiatgate.core.logging_config import get_logger
from fiatgate.core.typing import Clock, col, utc_now
from fiatgate.models.pending_settlement import (
    DisputeKind,
    PendingSettlement,
    SettlementDispute,
    SettlementStatus,
    SettlementStatusChange,
)
from fiatgate.schemas import PaymentSucceeded
from fiatgate.services.settlement_tiers import delay_days

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 5
MAX_ERROR_LENGTH = 1000

# Optimistic transitions re-read the row and try again when another writer won
_MAX_TRANSITION_ATTEMPTS = 3

# Statuses a dispute may move to DISPUTED. FAILED is terminal and keeps its status.
_DISPUTABLE = (SettlementStatus.PENDING, SettlementStatus.SETTLING, SettlementStatus.SETTLED)


@dataclass
class DisputeRecording:
    """Outcome of storing a dispute notification."""

    dispute: SettlementDispute
    settlement: Optional[PendingSettlement]
    previous_status: Optional[SettlementStatus]


class PendingSettlementStore:
    def __init__(self, engine: Engine, clock: Clock = utc_now, max_retries: int = DEFAULT_MAX_RETRIES):
        self.engine = engine
        self.clock = clock
        self.max_retries = max_retries

    # -- creation -------------------------------------------------------

    def create(self, event: PaymentSucceeded, now: Optional[datetime] = None) -> PendingSettlement:
        """
        Create the settlement record for a payment event.

        The tier delay is computed once, here, and never recomputed. A dispute
        that arrived before its payment makes the record start out DISPUTED; one
        committed while this record was still uncommitted is applied right after.

        Raises:
            ValidationError: bad risk score, amount or event id
            ConflictError: a record for this event id already exists
        """
        if not event.event_id:
            raise ValidationError("Payment event id is required")
        if event.amount_usd <= 0:
            raise ValidationError(
                "Payment amount must be positive",
                metadata={"event_id": event.event_id, "amount_usd": event.amount_usd},
            )
        days = delay_days(event.risk_score)
        now = now or self.clock()

        with Session(self.engine) as session:
            orphans = list(
                session.exec(
                    select(SettlementDispute).where(
                        col(SettlementDispute.payment_event_id) == event.event_id,
                        col(SettlementDispute.settlement_id).is_(None),
                    )
                ).all()
            )
            status = SettlementStatus.DISPUTED if orphans else SettlementStatus.PENDING

            record = PendingSettlement(
                event_id=event.event_id,
                amount_usd=event.amount_usd,
                risk_score=event.risk_score,
                settlement_delay_days=days,
                status=status,
                beneficiary_address=event.beneficiary_address,
                project_id=event.project_id,
                chain_id=event.chain_id,
                memo=event.memo,
                created_at=now,
                clears_at=now + timedelta(days=days),
                updated_at=now,
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                raise ConflictError(
                    "Settlement already exists for this event",
                    metadata={"event_id": event.event_id},
                )

            for dispute in orphans:
                dispute.settlement_id = record.id
                session.add(dispute)

            reason = "disputed before payment arrived" if orphans else "created"
            self._record_change(session, record.id, None, status, reason, now)
            session.commit()
            session.refresh(record)

        # A dispute committed after the orphan query above missed this record
        late = self._adopt_late_disputes(record, now)
        if late:
            logger.warning(
                "Dispute arrived while payment was being created, holding as disputed",
                settlement_id=record.id,
                event_id=record.event_id,
                disputes=late,
            )
            return self.require(record.id)

        if orphans:
            logger.warning(
                "Payment arrived after its dispute, holding as disputed",
                settlement_id=record.id,
                event_id=record.event_id,
                disputes=len(orphans),
            )
        else:
            logger.info(
                "Created pending settlement",
                settlement_id=record.id,
                event_id=record.event_id,
                amount_usd=record.amount_usd,
                risk_score=record.risk_score,
                delay_days=days,
                clears_at=record.clears_at.isoformat(),
            )
        return record

    # -- lookups --------------------------------------------------------

    def get(self, settlement_id: int) -> Optional[PendingSettlement]:
        with Session(self.engine) as session:
            return session.get(PendingSettlement, settlement_id)

    def require(self, settlement_id: int) -> PendingSettlement:
        record = self.get(settlement_id)
        if record is None:
            raise NotFoundError("Settlement not found", metadata={"settlement_id": settlement_id})
        return record

    def get_by_event_id(self, event_id: str) -> Optional[PendingSettlement]:
        with Session(self.engine) as session:
            return session.exec(
                select(PendingSettlement).where(col(PendingSettlement.event_id) == event_id)
            ).first()

    def due_for_release(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[PendingSettlement]:
        """Pending records whose clearing period has passed, oldest clears_at first."""
        now = now or self.clock()
        stmt = (
            select(PendingSettlement)
            .where(
                col(PendingSettlement.status) == SettlementStatus.PENDING,
                col(PendingSettlement.clears_at) <= now,
            )
            .order_by(col(PendingSettlement.clears_at).asc(), col(PendingSettlement.id).asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def list_by_status(self, status: SettlementStatus, limit: int = 100) -> List[PendingSettlement]:
        stmt = (
            select(PendingSettlement)
            .where(col(PendingSettlement.status) == status)
            .order_by(col(PendingSettlement.updated_at).desc())
            .limit(limit)
        )
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def history(self, settlement_id: int) -> List[SettlementStatusChange]:
        stmt = (
            select(SettlementStatusChange)
            .where(col(SettlementStatusChange.settlement_id) == settlement_id)
            .order_by(col(SettlementStatusChange.id).asc())
        )
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def disputes_for(self, settlement_id: int) -> List[SettlementDispute]:
        stmt = (
            select(SettlementDispute)
            .where(col(SettlementDispute.settlement_id) == settlement_id)
            .order_by(col(SettlementDispute.id).asc())
        )
        with Session(self.engine) as session:
            return list(session.exec(stmt).all())

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SettlementStatus}
        stmt = select(PendingSettlement.status, func.count()).group_by(PendingSettlement.status)
        with Session(self.engine) as session:
            for status, count in session.exec(stmt).all():
                counts[SettlementStatus(status).value] = count
        return counts

    def pending_totals(self) -> Dict[str, Any]:
        """Count, USD total and next clearing time of records still held."""
        stmt = select(
            func.count(),
            func.coalesce(func.sum(PendingSettlement.amount_usd), 0.0),
            func.min(PendingSettlement.clears_at),
        ).where(col(PendingSettlement.status) == SettlementStatus.PENDING)
        with Session(self.engine) as session:
            count, total, next_clears_at = session.exec(stmt).one()
        return {
            "pending_count": count,
            "pending_usd": round(float(total), 2),
            "next_clears_at": next_clears_at,
        }

    # -- sweep transitions ----------------------------------------------

    def claim_for_release(self, settlement_id: int, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a due record PENDING -> SETTLING.

        Returns False when another sweep already claimed it, or it is no
        longer pending or due. Only the caller that gets True may release.
        """
        now = now or self.clock()
        stmt = (
            update(PendingSettlement)
            .execution_options(synchronize_session=False)
            .where(
                col(PendingSettlement.id) == settlement_id,
                col(PendingSettlement.status) == SettlementStatus.PENDING,
                col(PendingSettlement.clears_at) <= now,
            )
            .values(status=SettlementStatus.SETTLING, claimed_at=now, updated_at=now)
        )
        with Session(self.engine) as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            self._record_change(
                session, settlement_id, SettlementStatus.PENDING, SettlementStatus.SETTLING, "claimed for release", now
            )
            session.commit()
        return True

    def release_claim(
        self,
        settlement_id: int,
        reason: str,
        now: Optional[datetime] = None,
        claimed_before: Optional[datetime] = None,
    ) -> bool:
        """
        Return a SETTLING record to PENDING without counting a retry.

        With `claimed_before`, only a claim older than that is released.
        """
        now = now or self.clock()
        conditions = [
            col(PendingSettlement.id) == settlement_id,
            col(PendingSettlement.status) == SettlementStatus.SETTLING,
        ]
        if claimed_before is not None:
            conditions.append(col(PendingSettlement.claimed_at) < claimed_before)
        stmt = (
            update(PendingSettlement)
            .execution_options(synchronize_session=False)
            .where(*conditions)
            .values(status=SettlementStatus.PENDING, claimed_at=None, updated_at=now)
        )
        with Session(self.engine) as session:
            result = session.exec(stmt)  # type: ignore[call-overload]
            if result.rowcount != 1:
                session.rollback()
                return False
            self._record_change(session, settlement_id, SettlementStatus.SETTLING, SettlementStatus.PENDING, reason, now)
            session.commit()
        return True

    def mark_settled(
        self,
        settlement_id: int,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PendingSettlement:
        """
        Record a successful release.

        If a dispute landed while the release was in flight, the record stays
        DISPUTED, the release reference is kept, and the conflict is reported
        for manual remediation.
        """
        now = now or self.clock()
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                update(PendingSettlement)
                .execution_options(synchronize_session=False)
                .where(
                    col(PendingSettlement.id) == settlement_id,
                    col(PendingSettlement.status) == SettlementStatus.SETTLING,
                )
                .values(
                    status=SettlementStatus.SETTLED,
                    release_reference=reference,
                    settled_at=now,
                    claimed_at=None,
                    last_error=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 1:
                self._record_change(
                    session, settlement_id, SettlementStatus.SETTLING, SettlementStatus.SETTLED, "released", now
                )
                session.commit()
                record = session.get(PendingSettlement, settlement_id)
                logger.info("Settlement released", settlement_id=settlement_id, reference=reference)
                return record

            session.rollback()
            record = session.get(PendingSettlement, settlement_id)
            if record is None:
                raise NotFoundError("Settlement not found", metadata={"settlement_id": settlement_id})
            if record.status == SettlementStatus.SETTLED:
                return record
            if record.status != SettlementStatus.DISPUTED:
                raise ConflictError(
                    "Settlement cannot be marked settled from its current status",
                    metadata={"settlement_id": settlement_id, "status": record.status.value},
                )

            record.release_reference = reference
            record.settled_at = now
            record.claimed_at = None
            record.updated_at = now
            session.add(record)
            self._record_change(
                session,
                settlement_id,
                SettlementStatus.DISPUTED,
                SettlementStatus.DISPUTED,
                "released after dispute",
                now,
            )
            session.commit()
            session.refresh(record)

        capture_message(
            "Release completed for a disputed payment, manual on-chain remediation required",
            level="error",
            context={"settlement_id": settlement_id, "event_id": record.event_id, "reference": reference},
            tags={"conflict": "released_after_dispute"},
        )
        return record

    def increment_retry(self, settlement_id: int, error: str, now: Optional[datetime] = None) -> PendingSettlement:
        """
        Count a failed release attempt.

        The record goes back to PENDING for the next sweep, or to FAILED once
        retry_count reaches max_retries. A record that left PENDING/SETTLING
        meanwhile (e.g. disputed) is returned untouched.
        """
        now = now or self.clock()
        error = error[:MAX_ERROR_LENGTH]

        with Session(self.engine) as session:
            for _ in range(_MAX_TRANSITION_ATTEMPTS):
                record = session.get(PendingSettlement, settlement_id, populate_existing=True)
                if record is None:
                    raise NotFoundError("Settlement not found", metadata={"settlement_id": settlement_id})
                if record.status not in (SettlementStatus.PENDING, SettlementStatus.SETTLING):
                    logger.info(
                        "Retry not counted, settlement left the release path",
                        settlement_id=settlement_id,
                        status=record.status.value,
                    )
                    return record

                old_status = record.status
                retry_count = record.retry_count + 1
                new_status = SettlementStatus.FAILED if retry_count >= self.max_retries else SettlementStatus.PENDING

                result = session.exec(  # type: ignore[call-overload]
                    update(PendingSettlement)
                    .execution_options(synchronize_session=False)
                    .where(
                        col(PendingSettlement.id) == settlement_id,
                        col(PendingSettlement.status) == old_status,
                        col(PendingSettlement.retry_count) == record.retry_count,
                    )
                    .values(
                        status=new_status,
                        retry_count=retry_count,
                        last_error=error,
                        last_retry_at=now,
                        claimed_at=None,
                        updated_at=now,
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                reason = f"release failed ({retry_count}/{self.max_retries}): {error[:200]}"
                self._record_change(session, settlement_id, old_status, new_status, reason, now)
                session.commit()
                return session.get(PendingSettlement, settlement_id, populate_existing=True)

        raise ConflictError(
            "Settlement changed concurrently while counting a retry",
            metadata={"settlement_id": settlement_id},
        )

    def reclaim_stale(self, cutoff: datetime, now: Optional[datetime] = None) -> int:
        """
        Return SETTLING records claimed before `cutoff` to PENDING.

        Covers sweeps that died mid-release. The release service deduplicates
        on the settlement's idempotency key, so a re-release is harmless.
        """
        now = now or self.clock()
        with Session(self.engine) as session:
            stale_ids = list(
                session.exec(
                    select(PendingSettlement.id).where(
                        col(PendingSettlement.status) == SettlementStatus.SETTLING,
                        col(PendingSettlement.claimed_at) < cutoff,
                    )
                ).all()
            )

        count = 0
        for settlement_id in stale_ids:
            if self.release_claim(settlement_id, "stale claim reclaimed", now=now, claimed_before=cutoff):
                count += 1

        if count:
            logger.warning("Reclaimed stale settlement claims", count=count, cutoff=cutoff.isoformat())
        return count

    # -- disputes -------------------------------------------------------

    def mark_disputed(
        self,
        settlement_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[PendingSettlement, Optional[SettlementStatus]]:
        """
        Move a record to DISPUTED.

        Returns the record and the status it had before. The previous status
        is None when nothing changed (already disputed, or failed).
        """
        now = now or self.clock()
        with Session(self.engine) as session:
            record = session.get(PendingSettlement, settlement_id)
            if record is None:
                raise NotFoundError("Settlement not found", metadata={"settlement_id": settlement_id})
            previous = self._dispute_in(session, record, reason, now)
            session.commit()
            session.refresh(record)
            return record, previous

    def record_dispute(
        self,
        event_id: str,
        payment_event_id: str,
        kind: DisputeKind,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DisputeRecording:
        """
        Store a dispute notification and dispute its settlement, in one transaction.

        A dispute whose payment is not stored yet stays an orphan until the
        payment arrives. Whichever side commits last links the two.

        Raises:
            ConflictError: this dispute event id was already recorded
        """
        now = now or self.clock()
        with Session(self.engine) as session:
            record = session.exec(
                select(PendingSettlement).where(col(PendingSettlement.event_id) == payment_event_id)
            ).first()

            dispute = SettlementDispute(
                event_id=event_id,
                payment_event_id=payment_event_id,
                settlement_id=record.id if record else None,
                kind=kind,
                reason=reason[:100] if reason else None,
                status_at_receipt=record.status.value if record else None,
                received_at=now,
            )
            session.add(dispute)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                raise ConflictError("Dispute event already recorded", metadata={"event_id": event_id})

            previous = None
            if record is not None:
                previous = self._dispute_in(session, record, reason or kind.value, now)
            session.commit()

            if record is None:
                # The payment may have committed after the lookup above
                record = session.exec(
                    select(PendingSettlement).where(col(PendingSettlement.event_id) == payment_event_id)
                ).first()
                if record is not None:
                    if self._link_orphans(session, record.id, payment_event_id, dispute_id=dispute.id):
                        previous = self._dispute_in(session, record, reason or kind.value, now)
                        session.commit()
                        logger.warning(
                            "Payment was created while its dispute was being stored, disputed now",
                            settlement_id=record.id,
                            event_id=event_id,
                        )
                    else:
                        # Linked and disputed by the payment side
                        session.rollback()
                        record = None

            session.refresh(dispute)
            if record is not None:
                session.refresh(record)

        return DisputeRecording(dispute=dispute, settlement=record, previous_status=previous)

    # -- internals ------------------------------------------------------

    def _adopt_late_disputes(self, record: PendingSettlement, now: datetime) -> int:
        """Link and apply disputes stored as orphans while `record` was uncommitted."""
        with Session(self.engine) as session:
            linked = self._link_orphans(session, record.id, record.event_id)
            if not linked:
                session.rollback()
                return 0
            current = session.get(PendingSettlement, record.id)
            self._dispute_in(session, current, "disputed while payment was being created", now)
            session.commit()
        return linked

    @staticmethod
    def _link_orphans(
        session: Session,
        settlement_id: Optional[int],
        payment_event_id: str,
        dispute_id: Optional[int] = None,
    ) -> int:
        # Conditional on settlement_id IS NULL so exactly one side links each dispute
        stmt = (
            update(SettlementDispute)
            .execution_options(synchronize_session=False)
            .where(
                col(SettlementDispute.payment_event_id) == payment_event_id,
                col(SettlementDispute.settlement_id).is_(None),
            )
            .values(settlement_id=settlement_id)
        )
        if dispute_id is not None:
            stmt = stmt.where(col(SettlementDispute.id) == dispute_id)
        result = session.exec(stmt)  # type: ignore[call-overload]
        return result.rowcount

    def _dispute_in(
        self,
        session: Session,
        record: PendingSettlement,
        reason: Optional[str],
        now: datetime,
    ) -> Optional[SettlementStatus]:
        for _ in range(_MAX_TRANSITION_ATTEMPTS):
            if record.status not in _DISPUTABLE:
                return None
            old_status = record.status
            result = session.exec(  # type: ignore[call-overload]
                update(PendingSettlement)
                .execution_options(synchronize_session=False)
                .where(
                    col(PendingSettlement.id) == record.id,
                    col(PendingSettlement.status) == old_status,
                )
                .values(status=SettlementStatus.DISPUTED, claimed_at=None, updated_at=now)
            )
            if result.rowcount == 1:
                self._record_change(
                    session, record.id, old_status, SettlementStatus.DISPUTED, reason or "disputed", now
                )
                return old_status
            session.refresh(record)

        raise ConflictError(
            "Settlement changed concurrently while recording a dispute",
            metadata={"settlement_id": record.id},
        )

    @staticmethod
    def _record_change(
        session: Session,
        settlement_id: Optional[int],
        from_status: Optional[SettlementStatus],
        to_status: SettlementStatus,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        session.add(
            SettlementStatusChange(
                settlement_id=settlement_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                reason=reason,
                changed_at=now,
            )
        )
