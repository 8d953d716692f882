import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import AuthService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def sweep_reset_tokens(source: str = "manual") -> int:
    """Delete used and expired password reset tokens; returns how many went."""
    with session_scope() as session:
        removed = AuthService(session).cleanup_expired_tokens()
    logger.info(f"reset_token_sweep: source={source} removed={removed}")
    return removed


class SchedulerManager:
    def __init__(self, sweep: Callable[[str], int] = sweep_reset_tokens) -> None:
        settings = get_settings()
        self.sweep = sweep
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def start(self) -> None:
        self.sweep("startup")

        # tokens live for an hour, so an hourly pass keeps the table small
        self.scheduler.add_job(
            self.sweep,
            IntervalTrigger(hours=1),
            args=["hourly"],
            id="reset_token_sweep_hourly",
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self.sweep,
            CronTrigger(hour=3, minute=15),
            args=["nightly_03:15"],
            id="reset_token_sweep_nightly",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        jobs = ", ".join(job.id for job in self.scheduler.get_jobs())
        logger.info(f"Scheduler started: {jobs}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
