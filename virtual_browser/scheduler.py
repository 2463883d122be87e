"""
Periodic maintenance on APScheduler.

Two jobs run for the lifetime of the server: the workspace reaper
(hourly by default) and the connection health sweep (every 30 seconds by
default). Each job keeps its own run and failure bookkeeping.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .logging_config import get_logger

logger = get_logger("virtual_browser.scheduler")

JobHandler = Callable[[], Awaitable[Any]]


class JobKind(Enum):
    WORKSPACE_REAP = "workspace_reap"
    HEALTH_CHECK = "health_check"


@dataclass
class MaintenanceJob:
    """A recurring maintenance job and its run history."""
    kind: JobKind
    handler: JobHandler
    interval: float
    runs: int = 0
    failures: int = 0
    last_run: Optional[str] = None
    last_error: Optional[str] = None
    next_run: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def id(self) -> str:
        return self.kind.value

    def trigger(self) -> IntervalTrigger:
        # APScheduler intervals are whole seconds or finer; never zero
        return IntervalTrigger(seconds=max(self.interval, 1.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run,
            "last_error": self.last_error,
            "next_run": self.next_run,
        }


class MaintenanceScheduler:
    """Owns the AsyncIOScheduler and the maintenance jobs registered on it."""

    def __init__(self):
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            }
        )
        self._jobs: Dict[JobKind, MaintenanceJob] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def add(self, kind: JobKind, handler: JobHandler, interval: float) -> MaintenanceJob:
        """Register (or replace) the job for ``kind``."""
        job = MaintenanceJob(kind=kind, handler=handler, interval=interval)
        self._jobs[kind] = job
        self._scheduler.add_job(
            self.run,
            trigger=job.trigger(),
            id=job.id,
            args=[job],
            replace_existing=True,
        )
        self._refresh_next_run(job)
        logger.info(f"Scheduled {job.id} every {job.interval:g}s")
        return job

    def get(self, kind: JobKind) -> Optional[MaintenanceJob]:
        return self._jobs.get(kind)

    def jobs(self) -> List[MaintenanceJob]:
        return list(self._jobs.values())

    def start(self):
        if self.running:
            return
        self._scheduler.start()
        for job in self._jobs.values():
            self._refresh_next_run(job)
        logger.info("Maintenance scheduler started")

    def stop(self):
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")

    async def run(self, job: MaintenanceJob):
        """Run one job now; failures are recorded, never raised."""
        job.last_run = datetime.now().isoformat()
        job.runs += 1
        try:
            await job.handler()
            job.last_error = None
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            logger.error(f"Maintenance job {job.id} failed: {e}")
        self._refresh_next_run(job)

    def _refresh_next_run(self, job: MaintenanceJob):
        # Pending jobs have no next_run_time until the scheduler starts
        scheduled = self._scheduler.get_job(job.id)
        next_run_time = getattr(scheduled, "next_run_time", None) if scheduled else None
        if next_run_time:
            job.next_run = next_run_time.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }


# Global scheduler instance
maintenance_scheduler = MaintenanceScheduler()
