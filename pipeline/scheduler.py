import logging
import asyncio
from typing import Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import AlreadyRunning, ETLException
from pipeline.coordinator import PipelineCoordinator

logger = logging.getLogger(__name__)


class PipelineScheduler:
    def __init__(self, coordinator: PipelineCoordinator, interval_minutes: Optional[int] = None):
        self.coordinator = coordinator
        self.interval_minutes = interval_minutes or settings.SCHEDULE_INTERVAL_MINUTES
        self.scheduler = AsyncIOScheduler()

    async def run_all(self) -> Dict[str, str]:
        """Job to run every configured pipeline once, concurrently"""
        pipeline_ids = self.coordinator.catalog.pipeline_ids
        logger.info(f"Scheduler: Starting runs for {len(pipeline_ids)} pipeline(s)")

        results = await asyncio.gather(
            *(self.coordinator.run_pipeline(pid) for pid in pipeline_ids),
            return_exceptions=True
        )

        outcomes: Dict[str, str] = {}
        for pipeline_id, result in zip(pipeline_ids, results):
            if isinstance(result, AlreadyRunning):
                # Expected when a previous tick is still busy
                logger.info(f"Scheduler: {pipeline_id} skipped, a run is already in flight")
                outcomes[pipeline_id] = "skipped"
            elif isinstance(result, ETLException):
                logger.error(f"Scheduler: {pipeline_id} failed - {result}")
                outcomes[pipeline_id] = "failed"
            elif isinstance(result, BaseException):
                logger.error(f"Scheduler: {pipeline_id} failed unexpectedly - {result!r}")
                outcomes[pipeline_id] = "failed"
            else:
                outcomes[pipeline_id] = result.status

        return outcomes

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_all,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="pipeline_runs",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Pipeline scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Pipeline scheduler stopped")
