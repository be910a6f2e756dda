"""
Composition root.

Builds the circuit registry, store, scheduler and handlers once and wires
them together. The API reads the container from app.state; tests build
their own with a fake clock, release operation and lease.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from fiatgate.core.circuit_breaker import CircuitRegistry
from fiatgate.core.config import Settings, settings as default_settings
from fiatgate.core.errors import capture_message
from fiatgate.core.health_check import HealthCheck
from fiatgate.core.health_thresholds import HealthThresholds
from fiatgate.core.typing import Clock, utc_now
from fiatgate.services.circuit_state_store import DatabaseCircuitStateStore
from fiatgate.services.dispute_handler import DisputeHandler
from fiatgate.services.leases import DatabaseLease, Lease
from fiatgate.services.release import ReleaseClient, ReleaseOperation
from fiatgate.services.settlement_scheduler import RELEASE_CIRCUIT, SettlementScheduler
from fiatgate.services.settlement_store import PendingSettlementStore

# External dependencies guarded by breakers, besides the release call
INDEXER_CIRCUIT = "indexer"
OBJECT_STORAGE_CIRCUIT = "object-storage"
PROOF_SERVICE_CIRCUIT = "proof-service"
DOCS_API_CIRCUIT = "docs-api"


@dataclass
class Container:
    settings: Settings
    engine: Engine
    clock: Clock
    registry: CircuitRegistry
    store: PendingSettlementStore
    scheduler: SettlementScheduler
    disputes: DisputeHandler
    health: HealthCheck
    release_client: Optional[ReleaseClient] = None

    def close(self) -> None:
        if self.release_client is not None:
            self.release_client.close()


def notify_state_change(name: str, old_state: str, new_state: str) -> None:
    if new_state == "open":
        capture_message(
            f"Circuit '{name}' opened",
            level="warning",
            context={"circuit": name, "from_state": old_state},
            tags={"circuit": name},
        )


def build_registry(settings: Settings, clock: Clock = utc_now, engine: Optional[Engine] = None) -> CircuitRegistry:
    state_store = None
    if settings.CIRCUIT_PERSIST_STATE and engine is not None:
        state_store = DatabaseCircuitStateStore(engine, clock)

    registry = CircuitRegistry(clock=clock, on_state_change=notify_state_change, state_store=state_store)
    for name in (RELEASE_CIRCUIT, INDEXER_CIRCUIT, PROOF_SERVICE_CIRCUIT, DOCS_API_CIRCUIT):
        registry.get(
            name,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=settings.CIRCUIT_RESET_TIMEOUT,
            success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
        )
    registry.get(
        OBJECT_STORAGE_CIRCUIT,
        failure_threshold=settings.OBJECT_STORAGE_FAILURE_THRESHOLD,
        reset_timeout=settings.OBJECT_STORAGE_RESET_TIMEOUT,
        success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
    )
    return registry


def build_container(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    clock: Clock = utc_now,
    release: Optional[ReleaseOperation] = None,
    lease: Optional[Lease] = None,
) -> Container:
    settings = settings or default_settings
    if engine is None:
        from fiatgate.db import engine as default_engine

        engine = default_engine

    release_client = None
    if release is None:
        release_client = ReleaseClient(
            settings.RELEASE_SERVICE_URL,
            token=settings.RELEASE_SERVICE_TOKEN,
            timeout=settings.RELEASE_TIMEOUT_SECONDS,
        )
        release = release_client

    registry = build_registry(settings, clock, engine)
    store = PendingSettlementStore(engine, clock=clock, max_retries=settings.SETTLEMENT_MAX_RETRIES)
    scheduler = SettlementScheduler(
        store,
        registry,
        release,
        clock=clock,
        lease=lease if lease is not None else DatabaseLease(engine, clock),
        batch_size=settings.SETTLEMENT_BATCH_SIZE,
        stale_claim_minutes=settings.SETTLEMENT_STALE_CLAIM_MINUTES,
        lease_seconds=settings.SETTLEMENT_LEASE_SECONDS,
    )
    health = HealthCheck(store, registry, engine, HealthThresholds.from_settings(settings), clock)

    return Container(
        settings=settings,
        engine=engine,
        clock=clock,
        registry=registry,
        store=store,
        scheduler=scheduler,
        disputes=DisputeHandler(store),
        health=health,
        release_client=release_client,
    )
