"""Scheduler for housekeeping tasks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import get_housekeeping_config
from .housekeeping import cleanup_offline_packages, sweep_job_records
from .store import RecordStore
from .streaming import StreamingSessionManager

logger = logging.getLogger(__name__)


class HousekeepingScheduler:
    """
    Manages periodic housekeeping using APScheduler.

    Two jobs run off the event loop:
    - job sweep (cron): stale job records and dead offline packages
    - session sweep (interval): streaming sessions idle past their window

    Lifecycle:
    - start(): Initialize scheduler and add jobs
    - stop(): Gracefully shutdown scheduler
    """

    JOB_SWEEP_ID = "sweep_job_records"
    SESSION_SWEEP_ID = "expire_sessions"

    def __init__(
        self,
        store: RecordStore,
        sessions: StreamingSessionManager,
        offline_dir: Path | None = None,
        config: dict[str, Any] | None = None,
    ):
        self.store = store
        self.sessions = sessions
        self.offline_dir = Path(offline_dir) if offline_dir else sessions.downloads.offline_dir
        self.config = config or get_housekeeping_config()
        self.scheduler = AsyncIOScheduler()

    async def start(self):
        """Start the scheduler with current config."""
        if not self.config["enabled"]:
            logger.info("Housekeeping scheduler disabled in config")
            return

        schedule = self.config["schedule"]
        try:
            trigger = CronTrigger.from_crontab(schedule)
        except ValueError as e:
            logger.error(f"Invalid cron expression '{schedule}': {e}")
            return

        self.scheduler.add_job(
            self._run_job_sweep,
            trigger=trigger,
            id=self.JOB_SWEEP_ID,
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_session_sweep,
            trigger=IntervalTrigger(seconds=self.config["session_sweep_seconds"]),
            id=self.SESSION_SWEEP_ID,
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()

        job = self.scheduler.get_job(self.JOB_SWEEP_ID)
        if job:
            logger.info(f"Housekeeping scheduler started, next job sweep: {job.next_run_time}")
        else:
            logger.warning("Housekeeping scheduler started but job sweep not found")

    async def _run_job_sweep(self):
        """Execute the job record sweep (internal wrapper with logging)."""
        completed_hours = self.config["completed_retention_hours"]
        failed_hours = self.config["failed_retention_hours"]
        logger.info(
            f"Starting job record sweep (completed: {completed_hours}h, failed: {failed_hours}h)"
        )

        try:
            result = await asyncio.to_thread(
                sweep_job_records, self.store, completed_hours, failed_hours
            )
            logger.info(
                f"Job sweep completed: {result['deleted_completed']} completed and "
                f"{result['deleted_failed']} failed records deleted, "
                f"{result['purged_expired']} expired records purged"
            )

            packages = await asyncio.to_thread(cleanup_offline_packages, self.store, self.offline_dir)
            if packages["deleted_count"]:
                freed_mb = packages["freed_bytes"] / 1024 / 1024
                logger.info(f"Removed {packages['deleted_count']} offline packages, {freed_mb:.2f} MB freed")
            for error in packages["errors"]:
                logger.warning(f"  - {error['folder']}: {error['error']}")

        except Exception as e:
            logger.error(f"Job sweep failed with exception: {e}", exc_info=True)

    async def _run_session_sweep(self):
        try:
            expired = await asyncio.to_thread(self.sessions.expire_sessions)
            logger.debug(f"Session sweep removed {expired} session(s)")
        except Exception as e:
            logger.error(f"Session sweep failed with exception: {e}", exc_info=True)

    async def stop(self):
        """Stop the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Housekeeping scheduler stopped")
