"""
Pipeline CRM Scheduled Jobs
Daily compliance jobs and the webhook delivery loop
"""

from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from ..core.config import settings
from ..core.database import AsyncSessionLocal
from .retention_service import RetentionService
from .webhook_service import WebhookService

logger = structlog.get_logger()


class JobScheduler:
    """Runs the background jobs, each on its own database session"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.is_running = False

    def start(self):
        self.scheduler.add_job(
            self.run_retention_policies,
            CronTrigger(hour=settings.compliance_job_hour, minute=0, timezone='UTC'),
            id='retention_policies',
            name='Run active retention policies',
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.check_overdue_dsrs,
            CronTrigger(hour=settings.compliance_job_hour, minute=30, timezone='UTC'),
            id='overdue_dsr_check',
            name='Check overdue data subject requests',
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.process_webhook_deliveries,
            IntervalTrigger(seconds=settings.webhook_delivery_interval_seconds),
            id='webhook_deliveries',
            name='Deliver pending webhooks',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self.is_running = True

        logger.info(
            "Job scheduler started",
            compliance_hour=settings.compliance_job_hour,
            webhook_interval_seconds=settings.webhook_delivery_interval_seconds
        )

    def shutdown(self):
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Job scheduler stopped")

    async def run_retention_policies(self) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            try:
                results = await RetentionService(db).run_all_active_retention_policies()
                return {"policies_run": len(results)}
            except Exception as e:
                logger.error("Retention job failed", error=str(e))
                return None

    async def check_overdue_dsrs(self) -> Optional[Dict[str, int]]:
        async with self.session_factory() as db:
            try:
                return await RetentionService(db).check_overdue_dsrs()
            except Exception as e:
                logger.error("Overdue DSR job failed", error=str(e))
                return None

    async def process_webhook_deliveries(self) -> Optional[Dict[str, int]]:
        async with self.session_factory() as db:
            try:
                return await WebhookService(db).process_pending_deliveries()
            except Exception as e:
                logger.error("Webhook delivery job failed", error=str(e))
                return None


# Global scheduler instance
job_scheduler: Optional[JobScheduler] = None


def start_scheduler() -> JobScheduler:
    global job_scheduler
    if job_scheduler is None:
        job_scheduler = JobScheduler()
        job_scheduler.start()
    return job_scheduler


def stop_scheduler():
    global job_scheduler
    if job_scheduler:
        job_scheduler.shutdown()
        job_scheduler = None
