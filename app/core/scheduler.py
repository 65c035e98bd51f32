"""
Automated task scheduler for inventory-sync-api.

This module provides scheduled background jobs for:
- Nightly full sync (directory, then devices)
- Sweeping sync runs abandoned by a crash or restart

Scheduler: APScheduler (lightweight, FastAPI-compatible)
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.core.database import run_in_db_executor
from app.services.sync.orchestrator import ALL, SyncOrchestrator

logger = logging.getLogger(__name__)

STALE_RUN_SWEEP_MINUTES = 15


class AutomationScheduler:
    """
    Main scheduler for automated background tasks.

    Jobs only trigger runs through the orchestrator; the runs themselves
    execute as registered background tasks.
    """

    def __init__(self, orchestrator: SyncOrchestrator, config=None):
        self.orchestrator = orchestrator
        self.config = config or settings
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting automation scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone=self.config.SYNC_SCHEDULE_TIMEZONE,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': 300  # 5 minutes grace for misfires
            }
        )

        if self.config.SYNC_SCHEDULE_ENABLED:
            self._schedule_full_sync()
        self._schedule_stale_run_sweep()

        self.scheduler.start()
        self.running = True

        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Scheduler stopped")

    def _schedule_full_sync(self):
        """
        Schedule: Full directory + device sync.

        Frequency: Daily at SYNC_SCHEDULE_HOUR:SYNC_SCHEDULE_MINUTE
        """
        if self.scheduler is None:
            return

        hour = self.config.SYNC_SCHEDULE_HOUR
        minute = self.config.SYNC_SCHEDULE_MINUTE

        @self.scheduler.scheduled_job(
            trigger=CronTrigger(hour=hour, minute=minute, timezone=self.config.SYNC_SCHEDULE_TIMEZONE),
            id='full_sync',
            name='Full Directory and Device Sync',
            misfire_grace_time=3600
        )
        async def full_sync_job():
            try:
                run_id = await self.orchestrator.trigger_sync(ALL)
                logger.info(f"Scheduled full sync started: {run_id}")
            except Exception as e:
                logger.error(f"Scheduled full sync failed to start: {e}")

        logger.info(f"Scheduled: Full sync (daily {hour:02d}:{minute:02d} {self.config.SYNC_SCHEDULE_TIMEZONE})")

    def _schedule_stale_run_sweep(self):
        """
        Schedule: Close runs left open past the stale-run ceiling.

        Frequency: Every 15 minutes
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=STALE_RUN_SWEEP_MINUTES),
            id='stale_run_sweep',
            name='Recover Abandoned Sync Runs',
        )
        async def stale_run_sweep_job():
            try:
                recovered = await run_in_db_executor(self.orchestrator.recover_abandoned_runs)
                if recovered:
                    logger.warning(f"Stale run sweep closed {recovered} abandoned runs")
            except Exception as e:
                logger.error(f"Stale run sweep failed: {e}")

        logger.info(f"Scheduled: Stale run sweep (every {STALE_RUN_SWEEP_MINUTES} minutes)")

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            next_run_str = next_run.isoformat() if next_run else 'Pending'
            logger.info(f"  {job.name} (id={job.id}) next run: {next_run_str}")


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


async def start_scheduler(orchestrator: SyncOrchestrator):
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler(orchestrator)
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[AutomationScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
