"""Cron-driven job triggers built on APScheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .jobs import TASK_BACKFILL, TASK_CLEANUP, TASK_FETCH, JobOutcome, JobRunner

FETCH_JOB_ID = "feedsync-fetch"
CLEANUP_JOB_ID = "feedsync-media-cleanup"


class JobScheduler:
    """Fires fetch and media cleanup on their cron schedules.

    Ticks only submit work to the runner; overlapping ticks collapse onto the in-flight task and
    the task lease guards against any other process holding the same job.
    """

    def __init__(
        self,
        runner: JobRunner,
        logger: Optional[logging.Logger] = None,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.runner = runner
        self.logger = logger or logging.getLogger(__name__)
        self.scheduler = scheduler or AsyncIOScheduler()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self, *, run_immediately: bool = True) -> list[asyncio.Task[JobOutcome]]:
        """Register the cron jobs and start the scheduler; must be called inside a running loop.

        With ``run_immediately`` the fetch, cleanup and any interrupted backfill are kicked off
        right away and their tasks returned.
        """

        if self._running:
            return []

        fetch_schedule = self.runner.config.fetch.schedule
        cleanup_schedule = self.runner.config.media_cache.cleanup_schedule
        self.scheduler.add_job(
            self._tick_fetch,
            CronTrigger.from_crontab(fetch_schedule),
            id=FETCH_JOB_ID,
            name="Fetch timelines",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._tick_cleanup,
            CronTrigger.from_crontab(cleanup_schedule),
            id=CLEANUP_JOB_ID,
            name="Media cache cleanup",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._running = True
        self.logger.info(
            "Scheduler started: fetch '%s', media cleanup '%s'", fetch_schedule, cleanup_schedule
        )

        if not run_immediately:
            return []
        return [
            self.runner.submit(TASK_FETCH),
            self.runner.submit(TASK_CLEANUP),
            asyncio.create_task(self._resume_backfill(), name=f"feedsync:{TASK_BACKFILL}-resume"),
        ]

    def shutdown(self) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        self.logger.info("Scheduler stopped")

    async def _tick_fetch(self) -> None:
        outcome = await self.runner.submit(TASK_FETCH)
        self._log(outcome)

    async def _tick_cleanup(self) -> None:
        outcome = await self.runner.submit(TASK_CLEANUP)
        self._log(outcome)

    async def _resume_backfill(self) -> Optional[JobOutcome]:
        outcome = await self.runner.resume_pending_backfill()
        if outcome is not None:
            self._log(outcome)
        return outcome

    def _log(self, outcome: JobOutcome) -> None:
        if outcome.status == "failed":
            self.logger.warning("%s", outcome.message)
        else:
            self.logger.info("%s", outcome.message)
