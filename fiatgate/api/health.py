from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fiatgate.api.deps import get_container
from fiatgate.container import Container

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health():
    """Basic liveness check."""
    return {"status": "healthy"}


@router.get("/circuits")
def circuit_health(container: Container = Depends(get_container)):
    return {
        **container.health.check_circuit_health(),
        "circuits": container.registry.get_all_stats(),
    }


@router.get("/full")
def full_health(container: Container = Depends(get_container)):
    """Aggregate health. 503 when any component is critical."""
    result = container.health.check_overall_health()
    status_code = 503 if result["status"] == "critical" else 200
    return JSONResponse(content=result, status_code=status_code)
