"""
Automatic sync scheduling.

Runs an import on a fixed interval with APScheduler. Each run resumes the
scheduled session when a checkpoint was left behind (pause, crash or
failure) and starts a fresh import otherwise.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import ImportAlreadyRunningError
from ingestion.coordinator import ImportCoordinator, SinkLike
from schemas.sync import QuerySpec
import logging

logger = logging.getLogger(__name__)

JOB_ID = "auto_sync_job"


class SyncScheduler:
    def __init__(
        self,
        coordinator: ImportCoordinator,
        spec: QuerySpec,
        sink: SinkLike,
        session_id: str = "auto-sync",
        batch_size: Optional[int] = None,
        interval_minutes: Optional[int] = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.coordinator = coordinator
        self.spec = spec
        self.sink = sink
        self.session_id = session_id
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.interval_minutes = interval_minutes or settings.AUTO_SYNC_INTERVAL_MINUTES

        self.total_runs = 0
        self.successful_runs = 0
        self.failed_runs = 0
        self.last_status: Optional[str] = None
        self.last_run_at: Optional[datetime] = None

    async def run_sync_job(self) -> None:
        """Job to run one scheduled import"""
        logger.info("Scheduler: Starting sync job")
        self.last_run_at = datetime.now(timezone.utc)

        try:
            checkpoint = await self.coordinator.store.load_checkpoint(self.session_id)
            if checkpoint is not None:
                summary = await self.coordinator.resume(self.session_id, self.sink, self.batch_size)
            else:
                summary = await self.coordinator.start(
                    self.spec, self.batch_size, self.sink, session_id=self.session_id
                )
        except ImportAlreadyRunningError:
            logger.info("Scheduler: Import already running, skipping this run")
            self.last_status = "skipped"
            return
        except Exception as e:
            logger.error(f"Scheduler: Sync job failed - {e}")
            self.total_runs += 1
            self.failed_runs += 1
            self.last_status = "failed"
            return

        self.total_runs += 1
        self.last_status = summary.phase.value
        if summary.faults:
            self.failed_runs += 1
        else:
            self.successful_runs += 1
        logger.info(
            f"Scheduler: Sync job finished with phase={summary.phase.value}, "
            f"imported={summary.imported}, failed={summary.failed}"
        )

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "interval_minutes": self.interval_minutes,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "last_status": self.last_status,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
