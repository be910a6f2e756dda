"""
In-process settlement sweep scheduling.

Enabled with RUN_SCHEDULER. Deployments with an external cron call
POST /api/v1/cron/settlements instead; both paths share the sweep lease.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from starlette.concurrency import run_in_threadpool

from fiatgate.container import Container
from fiatgate.core.errors import ErrorHandler
from fiatgate.core.logging_config import get_logger

logger = get_logger(__name__)

SWEEP_JOB_ID = "job_settlement_sweep"


def run_settlement_sweep(container: Container) -> None:
    # Background job: capture and report, never kill the scheduler
    with ErrorHandler("settlement_sweep"):
        container.scheduler.run_sweep()


async def job_settlement_sweep(container: Container) -> None:
    # The sweep does blocking DB and HTTP calls
    await run_in_threadpool(run_settlement_sweep, container)


def start_scheduler(container: Container) -> AsyncIOScheduler:
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs in this process
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up
    settings = container.settings
    interval = settings.SETTLEMENT_SWEEP_INTERVAL_MINUTES

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        job_settlement_sweep,
        IntervalTrigger(minutes=interval),
        args=[container],
        id=SWEEP_JOB_ID,
        max_instances=1,
        misfire_grace_time=max(60, interval * 30),  # half the interval, in seconds
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Scheduler started", job=SWEEP_JOB_ID, interval_minutes=interval)
    return scheduler
