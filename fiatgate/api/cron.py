"""
Cron-triggered settlement sweep.

For deployments where an external scheduler (e.g. Cloud Scheduler) drives
sweeps instead of the in-process APScheduler job. Overlapping calls are
safe: the sweep lease skips the later one.
"""

from fastapi import APIRouter, Depends

from fiatgate.api.deps import get_container, require_cron_secret
from fiatgate.container import Container
from fiatgate.schemas import SweepResultOut

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/settlements", response_model=SweepResultOut)
def run_settlement_sweep(container: Container = Depends(get_container)):
    return container.scheduler.run_sweep().to_dict()
