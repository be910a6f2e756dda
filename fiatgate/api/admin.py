from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from fiatgate.api.deps import get_container, require_admin_token
from fiatgate.container import Container
from fiatgate.core.circuit_breaker import CircuitBreaker
from fiatgate.core.errors import NotFoundError
from fiatgate.core.logging_config import get_logger
from fiatgate.models.pending_settlement import SettlementStatus
from fiatgate.schemas import (
    CircuitStatsOut,
    DisputeOut,
    SettlementDetailOut,
    SettlementOut,
    StatusChangeOut,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/settlements", response_model=List[SettlementOut])
def list_settlements(
    status: SettlementStatus = Query(default=SettlementStatus.FAILED),
    limit: int = Query(default=100, ge=1, le=500),
    container: Container = Depends(get_container),
):
    """Settlements by status. Defaults to FAILED, the ones waiting on an operator."""
    return container.store.list_by_status(status, limit=limit)


@router.get("/settlements/summary")
def settlement_summary(container: Container = Depends(get_container)) -> Dict[str, Any]:
    return {
        "counts": container.store.status_counts(),
        **container.store.pending_totals(),
    }


@router.get("/settlements/{settlement_id}", response_model=SettlementDetailOut)
def get_settlement(settlement_id: int, container: Container = Depends(get_container)):
    """A settlement with its status history and disputes."""
    record = container.store.require(settlement_id)
    return SettlementDetailOut(
        **SettlementOut.model_validate(record).model_dump(),
        history=[StatusChangeOut.model_validate(c) for c in container.store.history(settlement_id)],
        disputes=[DisputeOut.model_validate(d) for d in container.store.disputes_for(settlement_id)],
    )


@router.get("/circuits", response_model=List[CircuitStatsOut])
def list_circuits(container: Container = Depends(get_container)):
    return [container.registry.get(name).stats() for name in container.registry.names()]


def _circuit(container: Container, name: str) -> CircuitBreaker:
    if name not in container.registry:
        raise NotFoundError("Unknown circuit", metadata={"circuit": name})
    return container.registry.get(name)


@router.post("/circuits/{name}/reset", response_model=CircuitStatsOut)
def reset_circuit(name: str, container: Container = Depends(get_container)):
    """Force a circuit closed after the dependency is confirmed healthy."""
    breaker = _circuit(container, name)
    breaker.reset()
    logger.warning("Circuit reset by operator", circuit=name)
    return breaker.stats()


@router.post("/circuits/{name}/trip", response_model=CircuitStatsOut)
def trip_circuit(name: str, container: Container = Depends(get_container)):
    """Force a circuit open, e.g. during dependency maintenance."""
    breaker = _circuit(container, name)
    breaker.trip()
    logger.warning("Circuit tripped by operator", circuit=name)
    return breaker.stats()
