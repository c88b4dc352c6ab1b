"""Periodic job scheduling for the probe stages."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages interval jobs on the running asyncio loop using APScheduler.

    Every job runs with ``max_instances=1`` and ``coalesce=True``: a tick that
    comes due while the previous one is still running is dropped, not queued.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self):
        """Start the job scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started")

    def pause(self):
        """Stop firing new ticks; jobs already running carry on."""
        if self.running:
            self.scheduler.pause()
            logger.info("Job scheduler paused")

    def stop(self):
        """Stop the job scheduler."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: int,
        description: Optional[str] = None,
        run_immediately: bool = True,
    ):
        """Add an interval-based job."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        trigger = IntervalTrigger(seconds=seconds)
        extra: Dict[str, Any] = {}
        if run_immediately:
            # Left unset, the first run is one full interval away.
            extra["next_run_time"] = datetime.now(timezone.utc)
        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(1, int(seconds)),
            **extra,
        )

        self.jobs[job_id] = {
            "job": job,
            "seconds": seconds,
            "description": description,
            "added_at": datetime.now(timezone.utc),
        }

        logger.info("Added interval job", job_id=job_id, interval_seconds=seconds, description=description)

    def reschedule(self, job_id: str, seconds: int) -> bool:
        """Change the interval of an existing job."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False
        if self.jobs[job_id]["seconds"] == seconds:
            return False

        self.scheduler.reschedule_job(job_id, trigger=IntervalTrigger(seconds=seconds))
        self.jobs[job_id]["seconds"] = seconds
        logger.info("Rescheduled job", job_id=job_id, interval_seconds=seconds)
        return True

    def remove_job(self, job_id: str) -> bool:
        """Remove a scheduled job."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        """List all scheduled jobs."""
        out = []
        for job_id, info in self.jobs.items():
            job = self.scheduler.get_job(job_id)
            out.append(
                {
                    "job_id": job_id,
                    "interval_seconds": info["seconds"],
                    "description": info.get("description"),
                    "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
                }
            )
        return out
