"""
Background job scheduler.

Two interval jobs run on the event loop:
- global-sync: every `sync_interval_seconds`, syncs each user whose last
  successful run is older than their `sync_interval_minutes` preference
- cleanup: every `cleanup_interval_hours`, prunes old processing logs and
  delete-actioned emails

Each job carries an `is_running` flag; a tick that fires while the previous
run of the same job is still going does nothing.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.core.database import session_scope, utcnow
from backend.core.database.repository import AccountRepository, EmailRepository, ProcessingLogRepository

logger = logging.getLogger(__name__)

GLOBAL_SYNC_JOB = 'global-sync'
CLEANUP_JOB = 'cleanup'


@dataclass
class ScheduledJob:
    id: str
    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[Any]]
    last_run: Optional[datetime] = None
    is_running: bool = False
    task: Optional[asyncio.Task] = None  # Timer loop


class SyncScheduler:
    """
    Owns the interval jobs of one process.

    Usage:
        scheduler = SyncScheduler(session_factory, orchestrator, settings)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, session_factory, orchestrator, settings, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.settings = settings
        self.clock = clock
        self.jobs: Dict[str, ScheduledJob] = {}
        self._runs: set = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register both jobs and start their timers (requires a running loop)."""
        if self.jobs:
            logger.warning("Scheduler already started")
            return

        self._add_job(GLOBAL_SYNC_JOB, "Global Email Sync", self.settings.sync_interval_seconds, self.run_global_sync)
        self._add_job(CLEANUP_JOB, "Daily Cleanup", self.settings.cleanup_interval_hours * 3600, self.run_cleanup)
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")

    async def stop(self) -> None:
        """Cancel every timer and forget job state. Runs already in progress finish on their own."""
        timers = [job.task for job in self.jobs.values() if job.task is not None]
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self.jobs.clear()
        logger.info("Scheduler stopped")

    def _add_job(self, job_id: str, name: str, interval_seconds: float, func) -> ScheduledJob:
        job = ScheduledJob(id=job_id, name=name, interval_seconds=interval_seconds, func=func)
        job.task = asyncio.create_task(self._timer(job), name=f"scheduler-{job_id}")
        self.jobs[job_id] = job
        logger.info(f"Scheduled job {name} every {interval_seconds}s")
        return job

    async def _timer(self, job: ScheduledJob) -> None:
        while True:
            await asyncio.sleep(job.interval_seconds)
            # Not awaited: a slow run must not delay the next tick
            run = asyncio.create_task(self._run_guarded(job))
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    async def _run_guarded(self, job: ScheduledJob) -> bool:
        """Run `job` unless it is already running. Returns whether it ran."""
        if job.is_running:
            logger.info(f"Job {job.name} is still running, skipping this tick")
            return False

        job.is_running = True
        try:
            await job.func()
            job.last_run = self.clock()
        except Exception as e:
            logger.exception(f"Job {job.name} failed: {e}")
        finally:
            job.is_running = False
        return True

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def trigger(self, job_id: str) -> bool:
        """Run a job now under the same guard as its timer; False when unknown or busy."""
        job = self.jobs.get(job_id)
        if job is None:
            logger.warning(f"Unknown job: {job_id}")
            return False
        return await self._run_guarded(job)

    def get_job_status(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "last_run": job.last_run,
                "is_running": job.is_running,
            }
            for job in self.jobs.values()
        ]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_global_sync(self) -> Dict[str, Dict[str, Any]]:
        """
        Sync every user that is due.

        Returns:
            {user_id: {account_id: SyncResult}} for the users that were synced
        """
        with session_scope(self.session_factory) as db:
            accounts = AccountRepository(db)
            logs = ProcessingLogRepository(db)
            due = []
            for user_id in accounts.list_active_user_ids():
                if self._is_due(user_id, accounts, logs):
                    due.append(user_id)

        if not due:
            logger.debug("No users due for sync")
            return {}

        logger.info(f"Global sync: {len(due)} user(s) due")
        results = {}
        for user_id in due:
            results[user_id] = await self.orchestrator.sync_user(user_id)
        return results

    def _is_due(self, user_id: str, accounts: AccountRepository, logs: ProcessingLogRepository) -> bool:
        user_settings = accounts.get_user_settings(user_id)
        minutes = self.settings.default_sync_interval_minutes
        if user_settings is not None and user_settings.sync_interval_minutes:
            minutes = user_settings.sync_interval_minutes

        last_success = logs.last_successful_started_at(user_id)
        if last_success is None:
            return True

        if self.clock() - last_success < timedelta(minutes=minutes):
            logger.debug(f"Skipping user {user_id}: last sync at {last_success}, interval {minutes}m")
            return False
        return True

    async def run_cleanup(self) -> Dict[str, int]:
        """Delete old processing logs and delete-actioned emails."""
        now = self.clock()
        log_cutoff = now - timedelta(days=self.settings.log_retention_days)
        email_cutoff = now - timedelta(days=self.settings.deleted_email_retention_days)

        with session_scope(self.session_factory) as db:
            logs_deleted = ProcessingLogRepository(db).delete_older_than(log_cutoff)
            emails_deleted = EmailRepository(db).delete_actioned_before('delete', email_cutoff)

        logger.info(f"Cleanup removed {logs_deleted} processing logs and {emails_deleted} deleted emails")
        return {"logs_deleted": logs_deleted, "emails_deleted": emails_deleted}
