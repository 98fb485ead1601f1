"""Periodic reconciliation triggers.

- hourly: each configuration scheduled hourly, one run per configuration
- daily: every configuration ("all")
"""

import logging
from typing import TYPE_CHECKING, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import AlreadyInProgressError, ReconciliationError
from .configs import ALL_SCOPE, configs_for_schedule
from .models import Schedule

if TYPE_CHECKING:
    from .manager import ReconciliationJobManager

logger = logging.getLogger(__name__)

HOURLY_JOB_ID = "reconciliation_hourly"
DAILY_JOB_ID = "reconciliation_daily"


class ReconciliationScheduler:
    """Owns the APScheduler instance driving scheduled reconciliation."""

    def __init__(
        self,
        manager: "ReconciliationJobManager",
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.manager = manager
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    async def _run(self, config_names: List[str]) -> None:
        """Run one scheduled reconciliation; failures are logged, not raised."""
        label = ", ".join(config_names)
        logger.info(f"Scheduled reconciliation starting for {label}")
        try:
            job = await self.manager.run_reconciliation(config_names=config_names, created_by="scheduler")
        except AlreadyInProgressError:
            logger.warning(f"Scheduled reconciliation for {label} skipped: already in progress")
        except ReconciliationError as e:
            logger.error(f"Scheduled reconciliation for {label} failed: {e}")
        except Exception as e:
            logger.error(f"Scheduled reconciliation for {label} failed: {type(e).__name__}: {e}")
        else:
            logger.info(f"Scheduled reconciliation for {label} finished as job {job.id}")

    async def run_hourly(self) -> None:
        for config in configs_for_schedule(Schedule.HOURLY, self.manager.configs):
            await self._run([config.name])

    async def run_daily(self) -> None:
        await self._run([ALL_SCOPE])

    def start(self) -> None:
        """Register both triggers and start the scheduler."""
        if self.scheduler.running:
            logger.warning("Reconciliation scheduler already running")
            return

        self.scheduler.add_job(
            self.run_hourly,
            trigger=IntervalTrigger(hours=1),
            id=HOURLY_JOB_ID,
            name="Hourly reconciliation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_daily,
            trigger=IntervalTrigger(days=1),
            id=DAILY_JOB_ID,
            name="Daily reconciliation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Reconciliation scheduler started (hourly and daily)")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Reconciliation scheduler stopped")
