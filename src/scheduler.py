import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Dict, Any, Optional

from .storage.database import DatabaseManager
from .scraper.errors import InvalidTriggerRequest
from .utils.config import Config

class MaintenanceScheduler:
    """Periodic archival, event pruning and, when configured, scheduled scrapes."""

    def __init__(self, config: Config, db_manager: DatabaseManager, orchestrator=None):
        self.config = config
        self.db_manager = db_manager
        self.orchestrator = orchestrator
        self.scheduler = AsyncIOScheduler()
        self.logger = logging.getLogger('scheduler')

        self._setup_jobs()

    def _setup_jobs(self):
        scheduling_config = self.config.get_scheduling_config()

        scrape_interval = scheduling_config.get('scrape_interval_hours', 0)
        cleanup_interval = scheduling_config.get('cleanup_interval_hours', 24)

        if scrape_interval and self.orchestrator is not None:
            self.scheduler.add_job(
                self.scrape_active_sources,
                IntervalTrigger(hours=scrape_interval),
                id='scrape_sources',
                name='Trigger a job for all active sources',
                replace_existing=True
            )
            self.logger.info(f"Scheduled scraping every {scrape_interval} hours")

        self.scheduler.add_job(
            self.archive_old_content,
            IntervalTrigger(hours=cleanup_interval),
            id='archive_content',
            name='Archive old content and prune events',
            replace_existing=True
        )
        self.logger.info(f"Scheduled archival every {cleanup_interval} hours")

    async def scrape_active_sources(self) -> Optional[str]:
        names = [source.name for source in self.db_manager.get_sources(active_only=True)]
        if not names:
            self.logger.info("No active sources, skipping scheduled scrape")
            return None

        per_source = self.config.get_scheduling_config().get('scheduled_articles_per_source', 5)
        try:
            job_id = self.orchestrator.trigger(names, per_source)
            self.logger.info(f"Scheduled scrape started job {job_id}")
            return job_id
        except InvalidTriggerRequest as e:
            self.logger.error(f"Scheduled scrape rejected: {e}")
            return None

    async def archive_old_content(self) -> Dict[str, int]:
        db_config = self.config.get_database_config()
        retention_days = db_config.get('retention_days', 30)
        event_retention_days = db_config.get('event_retention_days', 14)

        archived = self.db_manager.archive_old_content(retention_days)
        pruned = self.db_manager.prune_events(event_retention_days)
        self.logger.info(
            f"Archived {archived} records older than {retention_days} days, "
            f"pruned {pruned} events older than {event_retention_days} days"
        )
        return {'archived': archived, 'pruned_events': pruned}

    def start(self):
        self.logger.info("Starting maintenance scheduler")
        self.scheduler.start()

    def shutdown(self):
        self.logger.info("Shutting down maintenance scheduler")
        if self.scheduler.running:
            self.scheduler.shutdown()

    def get_job_status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
                'trigger': str(job.trigger)
            })

        return {
            'running': self.scheduler.running,
            'jobs': jobs,
            'status_time': datetime.now().isoformat()
        }
