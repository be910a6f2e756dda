"""
Settlement sweep.

Runs on a fixed interval, independent of webhook timing. Each sweep:

1. takes the sweep lease (skips if another sweep holds it)
2. returns stale SETTLING claims to PENDING (crashed sweeps)
3. claims each due record with a conditional update, then releases it
   through the "release" circuit breaker

A failed release counts a retry; the record is retried on a later sweep
until it hits max retries and becomes FAILED for an operator. An open
release circuit defers the rest of the sweep without counting retries.
"""

import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fiatgate.core.circuit_breaker import CircuitRegistry
from fiatgate.core.errors import ExhaustedRetries, ServiceUnavailable, capture_message
from fiatgate.core.logging_config import get_logger
from fiatgate.core.typing import Clock, utc_now
from fiatgate.models.pending_settlement import PendingSettlement, SettlementStatus
from fiatgate.services.leases import Lease
from fiatgate.services.release import ReleaseOperation
from fiatgate.services.settlement_store import PendingSettlementStore

logger = get_logger(__name__)

SWEEP_LEASE_NAME = "settlement_sweep"
RELEASE_CIRCUIT = "release"


@dataclass
class SweepResult:
    skipped: bool = False  # Lease held by another sweep
    due: int = 0
    claimed: int = 0
    settled: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0  # Left pending because the release circuit is open
    disputed: int = 0  # Disputed while the release was in flight
    reclaimed: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SettlementScheduler:
    def __init__(
        self,
        store: PendingSettlementStore,
        registry: CircuitRegistry,
        release: ReleaseOperation,
        clock: Clock = utc_now,
        lease: Optional[Lease] = None,
        batch_size: int = 50,
        stale_claim_minutes: float = 30,
        lease_seconds: float = 900,
    ):
        self.store = store
        self.registry = registry
        self.release = release
        self.clock = clock
        self.lease = lease
        self.batch_size = batch_size
        self.stale_claim_minutes = stale_claim_minutes
        self.lease_seconds = lease_seconds

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Release every due settlement once.

        Safe to call concurrently: the lease skips overlapping sweeps and the
        per-record claim guarantees a single release even without a lease.
        """
        started = time.perf_counter()
        now = now or self.clock()
        holder = f"sweep-{uuid.uuid4().hex[:12]}"
        result = SweepResult()

        if self.lease is not None and not self.lease.acquire(SWEEP_LEASE_NAME, holder, self.lease_seconds):
            logger.info("Settlement sweep skipped, another sweep holds the lease")
            result.skipped = True
            return result

        try:
            cutoff = now - timedelta(minutes=self.stale_claim_minutes)
            result.reclaimed = self.store.reclaim_stale(cutoff, now=now)

            due = self.store.due_for_release(now, limit=self.batch_size)
            result.due = len(due)

            for index, record in enumerate(due):
                if not self.store.claim_for_release(record.id, now):
                    # Claimed by an overlapping sweep or disputed since the query
                    continue
                result.claimed += 1

                if not self._release_one(record, result):
                    result.deferred = len(due) - index
                    break
        finally:
            if self.lease is not None:
                self.lease.release(SWEEP_LEASE_NAME, holder)

        result.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info("Settlement sweep complete", **result.to_dict())
        return result

    def _release_one(self, record: PendingSettlement, result: SweepResult) -> bool:
        """Release a claimed record. Returns False when the sweep should stop."""
        try:
            reference = self.registry.execute(RELEASE_CIRCUIT, lambda: self.release(record))
        except ServiceUnavailable as e:
            self.store.release_claim(record.id, f"{e.service_name} circuit open")
            logger.warning(
                "Release circuit open, deferring remaining settlements",
                settlement_id=record.id,
                service=e.service_name,
            )
            return False
        except Exception as e:
            updated = self.store.increment_retry(record.id, f"{type(e).__name__}: {e}")
            if updated.status == SettlementStatus.FAILED:
                result.failed += 1
                self._escalate(updated)
            elif updated.status == SettlementStatus.DISPUTED:
                # Nothing left to retry
                result.disputed += 1
                logger.info(
                    "Release failed after the settlement was disputed",
                    settlement_id=record.id,
                    error=str(e),
                )
            else:
                result.retried += 1
                logger.warning(
                    "Release failed, will retry",
                    settlement_id=record.id,
                    retry_count=updated.retry_count,
                    error=str(e),
                )
            return True

        settled = self.store.mark_settled(record.id, reference)
        if settled.status == SettlementStatus.DISPUTED:
            result.disputed += 1
        else:
            result.settled += 1
        return True

    def _escalate(self, record: PendingSettlement) -> None:
        error = ExhaustedRetries(
            "Settlement release retries exhausted, manual review required",
            metadata={
                "settlement_id": record.id,
                "event_id": record.event_id,
                "amount_usd": record.amount_usd,
                "retry_count": record.retry_count,
                "last_error": record.last_error,
            },
        )
        capture_message(
            error.message,
            level="error",
            context={"code": error.code, **error.metadata},
            tags={"settlement": error.code},
        )
