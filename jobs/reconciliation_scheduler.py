"""
Reconciliation Scheduler - 3 interval jobs

1. Full sweep - every RECONCILIATION interval (hourly by default): run_all
2. File cleanup - every 6 hours
3. Communication gap check - every 12 hours

The reconciliation service is synchronous SQLAlchemy code, so each job runs
it in a worker thread and the event loop stays free.
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from services.reconciliation_service import ReconciliationService
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    APScheduler wrapper around a ReconciliationService.

    Scheduling Strategy:
    - Full sweep: every ``sweep_interval_minutes``
    - File cleanup: every ``cleanup_interval_hours``
    - Communication gaps: every ``communication_interval_hours``
    """

    def __init__(
        self,
        service: ReconciliationService,
        sweep_interval_minutes: Optional[int] = None,
        cleanup_interval_hours: Optional[int] = None,
        communication_interval_hours: Optional[int] = None,
    ):
        self.service = service
        self.sweep_interval_minutes = sweep_interval_minutes or Config.FULL_SWEEP_INTERVAL_MINUTES
        self.cleanup_interval_hours = cleanup_interval_hours or Config.FILE_CLEANUP_INTERVAL_HOURS
        self.communication_interval_hours = communication_interval_hours or Config.COMMUNICATION_CHECK_INTERVAL_HOURS

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 300
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def _run_full_sweep(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self.service.run_all)
        except Exception as e:
            logger.error(f"❌ RECONCILIATION_SWEEP_FAILED: {e}")
            return {"errors": [str(e)]}

    async def _run_file_cleanup(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self.service.cleanup_old_files)
        except Exception as e:
            logger.error(f"❌ FILE_CLEANUP_FAILED: {e}")
            return {"errors": [str(e)]}

    async def _run_communication_check(self) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self.service.detect_communication_gaps)
        except Exception as e:
            logger.error(f"❌ COMMUNICATION_CHECK_FAILED: {e}")
            return {"errors": [str(e)]}

    def setup_jobs(self):
        """Register the reconciliation jobs, replacing any earlier registration"""
        # Pending jobs of a stopped scheduler are not deduplicated by replace_existing
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        now = get_naive_utc_now().replace(second=0, microsecond=0)

        self.scheduler.add_job(
            self._run_full_sweep,
            trigger=IntervalTrigger(minutes=self.sweep_interval_minutes, start_date=now, timezone="UTC"),
            id="reconciliation_sweep",
            name="🔄 Reconciliation Sweep - timeouts, cleanup, inactivity",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._run_file_cleanup,
            trigger=IntervalTrigger(
                hours=self.cleanup_interval_hours, start_date=now.replace(minute=15), timezone="UTC"
            ),
            id="file_cleanup",
            name="🧹 File Cleanup - cancelled orders and superseded previews",
            replace_existing=True
        )

        self.scheduler.add_job(
            self._run_communication_check,
            trigger=IntervalTrigger(
                hours=self.communication_interval_hours, start_date=now.replace(minute=30), timezone="UTC"
            ),
            id="communication_gap_check",
            name="💬 Communication Gap Check",
            replace_existing=True
        )

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Reconciliation jobs registered: {[job.id for job in jobs]}")

    def start_all(self):
        """Register jobs and start the scheduler; needs a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.warning("✅ SCHEDULER ENABLED: reconciliation jobs running")

    def stop_all(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Reconciliation scheduler stopped")

    async def run_all(self) -> Dict[str, Any]:
        """Run one full sweep immediately"""
        return await self._run_full_sweep()


__all__ = ["ReconciliationScheduler"]
