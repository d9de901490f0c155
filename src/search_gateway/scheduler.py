"""Periodic maintenance jobs run on an APScheduler background thread."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from search_gateway.analytics.storage import AnalyticsStorage

logger = logging.getLogger(__name__)

ANALYTICS_PRUNING_JOB = "analytics_pruning"


class SchedulerService:
    """
    Owns one ``BackgroundScheduler``.

    Jobs are plain blocking callables executed on a small thread pool, never
    on the event loop. A job that misses its slot runs once on catch-up.
    """

    def __init__(self, max_workers: int = 1) -> None:
        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )

    @property
    def is_running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        logger.info(f"Scheduler started with jobs: {[job['id'] for job in self.list_jobs()]}")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        interval_minutes: int,
        kwargs: dict[str, Any] | None = None,
        run_immediately: bool = False,
    ) -> None:
        """Run ``func(**kwargs)`` every ``interval_minutes``; re-adding an id replaces it."""
        extra: dict[str, Any] = {}
        if run_immediately:
            # Omitting next_run_time schedules one interval out; None would pause the job
            extra["next_run_time"] = datetime.now(timezone.utc)

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=job_id,
            kwargs=kwargs or {},
            replace_existing=True,
            **extra,
        )
        logger.info(f"Scheduled {job_id} every {interval_minutes}m")

    def schedule_analytics_pruning(
        self,
        storage: AnalyticsStorage,
        interval_minutes: int,
        keep_days: int,
    ) -> None:
        """Delete search events older than ``keep_days`` on a fixed interval."""
        self.add_job(
            ANALYTICS_PRUNING_JOB,
            storage.prune_old_events,
            interval_minutes=interval_minutes,
            kwargs={"keep_days": keep_days},
        )

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                # Not assigned until the scheduler starts
                "next_run_time": getattr(job, "next_run_time", None),
            }
            for job in self._scheduler.get_jobs()
        ]
