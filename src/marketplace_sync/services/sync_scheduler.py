"""
Auto-Sync Scheduler using APScheduler.

Every AUTO_SYNC_INTERVAL_HOURS, enqueues a quick sync for each owner with
connected accounts on each platform. The jobs go through the continuation
queue, so the scheduler never runs a sync inline.
"""

from typing import Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketplace_sync.config.constants import SUPPORTED_PLATFORMS
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.db.repository import AccountRepository
from marketplace_sync.services.platform import SyncRequest

logger = setup_logger(__name__)


class SyncScheduler:
    """Manages the periodic auto-sync job."""

    def __init__(
        self,
        session_factory,
        queue,
        interval_hours: int = 6,
        platforms: Iterable[str] = SUPPORTED_PLATFORMS,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.interval_hours = interval_hours
        self.platforms = tuple(platforms)
        self.scheduler = AsyncIOScheduler()
        self._started = False

    async def start(self):
        """Start scheduler with the auto-sync job."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self.scheduler.add_job(
            self._run_auto_sync,
            IntervalTrigger(hours=self.interval_hours),
            id="auto_sync",
            name="Periodic Order Sync",
            replace_existing=True,
        )
        logger.info(f"Added auto-sync job (every {self.interval_hours} hour(s))")

        self.scheduler.start()
        self._started = True
        logger.info("Sync scheduler started")

    async def stop(self):
        """Gracefully stop scheduler."""
        if not self._started:
            return

        self.scheduler.shutdown(wait=True)
        self._started = False
        logger.info("Sync scheduler stopped")

    async def enqueue_all(self) -> int:
        """
        Enqueue a quick sync per owner and platform.

        Returns:
            Number of jobs accepted by the queue
        """
        enqueued = 0
        for platform in self.platforms:
            async with self.session_factory() as session:
                owners = await AccountRepository(session).owners_with_accounts(platform)

            for owner_id in owners:
                request = SyncRequest(platform=platform, owner_id=owner_id, quick_mode=True)
                if await self.queue.enqueue(request):
                    enqueued += 1
            logger.info(f"Auto-sync: {len(owners)} owner(s) on {platform}")
        return enqueued

    async def _run_auto_sync(self):
        """Wrapper for the scheduled run with error handling."""
        try:
            logger.info("Auto-sync triggered")
            enqueued = await self.enqueue_all()
            logger.info(f"Auto-sync enqueued {enqueued} job(s)")
        except Exception as e:
            logger.error(f"Auto-sync failed: {e}", exc_info=True)

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for monitoring."""
        result = {}

        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            if next_run:
                result[job.id] = next_run.strftime("%Y-%m-%d %H:%M:%S")
            else:
                result[job.id] = None

        return result

    def get_next_scheduled_sync(self) -> Optional[str]:
        job = self.scheduler.get_job("auto_sync")
        if job and job.next_run_time:
            return job.next_run_time.strftime("%Y-%m-%d %H:%M:%S")
        return None

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._started and self.scheduler.running
