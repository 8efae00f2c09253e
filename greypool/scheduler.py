"""Periodic jobs of the daemon."""

import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .models import Task, TaskOptions, TaskType

logger = logging.getLogger(__name__)

FSCK_JOB_ID = 'greypool_fsck'
FREE_SPACE_JOB_ID = 'greypool_free_space'
BACKUP_JOB_ID = 'greypool_metastore_backup'
DEFAULT_FSCK_OPTIONS = ['orphaned', 'email']


class PoolScheduler:
    """Owns the background scheduler of the daemon."""

    def __init__(self, queue, pool, fsck_schedule: Optional[str] = "0 3 * * 0",
                 free_space_refresh_seconds: int = 300,
                 fsck_options: Optional[List[str]] = None,
                 backup_job: Optional[Callable[[], object]] = None):
        """
        Initialize the scheduler.

        Args:
            queue: TaskQueue receiving the scheduled fsck tasks
            pool: StoragePoolManager whose free space is refreshed
            fsck_schedule: Crontab expression; empty disables the scheduled fsck
            free_space_refresh_seconds: Interval between free-space probes
            fsck_options: Options of the scheduled fsck task
            backup_job: Refreshes the metastore backups once a day
        """
        self.queue = queue
        self.pool = pool
        self.fsck_schedule = fsck_schedule
        self.free_space_refresh_seconds = free_space_refresh_seconds
        self.fsck_options = TaskOptions.from_names(
            DEFAULT_FSCK_OPTIONS if fsck_options is None else fsck_options
        )
        self.backup_job = backup_job
        self.scheduler = BackgroundScheduler(daemon=True)

    def start(self) -> None:
        if self.fsck_schedule:
            self.scheduler.add_job(
                self.enqueue_scheduled_fsck,
                CronTrigger.from_crontab(self.fsck_schedule),
                id=FSCK_JOB_ID,
                name='Greypool fsck',
                replace_existing=True
            )
        if self.free_space_refresh_seconds > 0:
            self.scheduler.add_job(
                self.pool.refresh_free_space,
                IntervalTrigger(seconds=self.free_space_refresh_seconds),
                id=FREE_SPACE_JOB_ID,
                name='Greypool free space refresh',
                replace_existing=True
            )
        if self.backup_job is not None:
            self.scheduler.add_job(
                self.backup_job,
                CronTrigger(hour=4, minute=30),
                id=BACKUP_JOB_ID,
                name='Greypool metastore backup',
                replace_existing=True
            )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Scheduler started; next fsck at {self.get_next_fsck_time()}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def enqueue_scheduled_fsck(self) -> Optional[Task]:
        """Queue an fsck of all shares unless one is already waiting."""
        if self.queue.has_pending(TaskType.FSCK):
            logger.info("An fsck of all shares is already queued; skipping scheduled run")
            return None
        task = self.queue.enqueue(Task(type=TaskType.FSCK, options=self.fsck_options))
        logger.info(f"Queued scheduled fsck (task {task.id})")
        return task

    def get_next_fsck_time(self) -> Optional[str]:
        job = self.scheduler.get_job(FSCK_JOB_ID)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None
