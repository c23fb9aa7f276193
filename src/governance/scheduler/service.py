"""APScheduler-based sweep that resets expired monthly quotas."""

import asyncio
import logging
from datetime import datetime

from apscheduler.executors.pool import ThreadPoolExecutor as APSThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from governance.quota.manager import QuotaManager

logger = logging.getLogger(__name__)

RESET_JOB_ID = "quota_reset_sweep"


class QuotaResetScheduler:
    """
    Background job that resets organizations past their reset date.

    Runs on a single worker thread; overlapping and missed runs are
    coalesced into one.
    """

    def __init__(
        self,
        quota_manager: QuotaManager,
        interval_minutes: int = 60,
        timezone: str = "UTC",
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            quota_manager: Manager whose expired quotas are reset
            interval_minutes: Minutes between sweeps
            timezone: Scheduler timezone
        """
        self._quota_manager = quota_manager
        self._interval_minutes = interval_minutes
        self._timezone = timezone
        self._scheduler: BackgroundScheduler | None = None

    @property
    def scheduler(self) -> BackgroundScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(
                executors={"default": APSThreadPoolExecutor(max_workers=1)},
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 60 * 5,
                },
                timezone=self._timezone,
            )
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_sweep(self) -> int:
        """Run one reset sweep synchronously. Returns organizations reset."""
        try:
            return asyncio.run(self._quota_manager.reset_expired_quotas())
        except Exception as e:
            logger.error(f"Quota reset sweep failed: {e}")
            return 0

    def start(self, run_immediately: bool = False) -> None:
        """Register the sweep job and start the scheduler."""
        if self.running:
            logger.warning("Quota reset scheduler is already running")
            return

        job_kwargs = {}
        if run_immediately:
            # Passing next_run_time=None would add the job paused
            job_kwargs["next_run_time"] = datetime.now()

        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=RESET_JOB_ID,
            name=RESET_JOB_ID,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()
        logger.info(f"Quota reset sweep scheduled every {self._interval_minutes}m")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler."""
        if self.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Quota reset scheduler shutdown complete")
