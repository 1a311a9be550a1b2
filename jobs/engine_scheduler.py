"""
Engine Scheduler - three independently ticking periodic tasks

1. Reconciliation poll loop - its own asyncio task, stop() awaits the in-flight cycle
2. Order expiry sweep - APScheduler interval job
3. Notification processor - APScheduler interval job

A slow reconciliation cycle never delays expiry or delivery, and vice versa.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.notification_processor import run_notification_processor
from jobs.order_expiry import run_order_expiry_sweep

logger = logging.getLogger(__name__)

EXPIRY_JOB_ID = "order_expiry_sweep"
NOTIFICATION_JOB_ID = "notification_processor"


class EngineScheduler:
    """Owns the periodic work of the reconciliation engine"""

    def __init__(
        self,
        reconciliation_scheduler,
        order_service,
        notification_service,
        expiry_interval: int = None,
        notification_interval: int = None,
    ):
        self.reconciliation = reconciliation_scheduler
        self.order_service = order_service
        self.notification_service = notification_service
        self.expiry_interval = expiry_interval or Config.EXPIRY_SWEEP_INTERVAL_SECONDS
        self.notification_interval = notification_interval or Config.NOTIFICATION_PROCESS_INTERVAL_SECONDS

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the expiry sweep and notification processor jobs"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        now = datetime.now()

        self.scheduler.add_job(
            run_order_expiry_sweep,
            trigger=IntervalTrigger(seconds=self.expiry_interval, start_date=now + timedelta(seconds=5)),
            args=[self.order_service],
            id=EXPIRY_JOB_ID,
            name="⏰ Order Expiry Sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Order Expiry Sweep scheduled every {self.expiry_interval} seconds")

        self.scheduler.add_job(
            run_notification_processor,
            trigger=IntervalTrigger(seconds=self.notification_interval, start_date=now + timedelta(seconds=15)),
            args=[self.notification_service],
            id=NOTIFICATION_JOB_ID,
            name="📨 Notification Processor",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Notification Processor scheduled every {self.notification_interval} seconds")

    async def start(self):
        """Start APScheduler jobs and the reconciliation poll loop (requires a running event loop)"""
        self.setup_jobs()
        if not self.scheduler.running:
            self.scheduler.start()
        await self.reconciliation.start()
        logger.info(f"🚀 ENGINE_SCHEDULER_STARTED: {len(self.scheduler.get_jobs())} interval jobs + poll loop")

    async def stop(self):
        """Stop polling after the current cycle, then shut the job scheduler down"""
        await self.reconciliation.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("🛑 ENGINE_SCHEDULER_STOPPED")
