"""
Background scheduler.
Periodically expires or completes the signed-in owner's weekly challenge.
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from progress_core.config import CHALLENGE_SWEEP_MINUTES
from progress_core.services.progress_service import ProgressCore

logger = logging.getLogger("progress_core.scheduler")


async def run_challenge_sweep(core: ProgressCore) -> None:
    """Sweep the weekly challenge; never raises into the scheduler"""
    if core.session.owner_id is None:
        return
    try:
        await core.sweep_challenges()
    except Exception as e:
        logger.error(f"Error in run_challenge_sweep: {e}")


def start_scheduler(core: ProgressCore, minutes: int = CHALLENGE_SWEEP_MINUTES) -> AsyncIOScheduler:
    """Start a scheduler bound to the running event loop"""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_challenge_sweep,
        IntervalTrigger(minutes=minutes),
        args=[core],
        id="challenge_sweep",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduler started, jobs: {[job.id for job in scheduler.get_jobs()]}")
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
