"""Fixed-cadence background jobs (the history snapshot) on APScheduler."""

from typing import Any, Callable, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .models import utcnow


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Runs process-wide interval jobs. Per-service checks do not go through here."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._meta: Dict[str, Dict[str, Any]] = {}
        self.running = False

    async def start(self):
        if self.running:
            logger.warning("Job scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", jobs=sorted(self._meta))

    async def stop(self):
        if not self.running:
            return
        # Snapshot writes are short; do not block shutdown on one in flight.
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_interval_job(self, job_id: str, func: Callable, seconds: int, description: Optional[str] = None):
        """Schedule ``func`` every ``seconds``. Re-adding an id replaces the previous job."""
        if job_id in self._meta:
            logger.warning("Replacing interval job", job_id=job_id)

        # A slow run never overlaps the next one; missed runs collapse into one.
        self.scheduler.add_job(
            func,
            IntervalTrigger(seconds=seconds),
            id=job_id,
            name=description or job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._meta[job_id] = {"seconds": seconds, "description": description, "added_at": utcnow()}
        logger.info("Interval job scheduled", job_id=job_id, interval_seconds=seconds)

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        meta = self._meta.get(job_id)
        job = self.scheduler.get_job(job_id)
        if meta is None or job is None:
            return None
        next_run = getattr(job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": job.name,
            "seconds": meta["seconds"],
            "description": meta["description"],
            "next_run": next_run.isoformat() if next_run else None,
            "added_at": meta["added_at"].isoformat(),
        }
