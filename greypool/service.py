"""Wiring of the storage pool daemon components."""

import logging
from typing import Optional

from .config_manager import ConfigManager
from .database import Database
from .dispatcher import TaskDispatcher
from .fsck import ConsistencyChecker
from .metastore import Metastore
from .models import ChecksumMismatchPolicy, DestinationPolicy, TaskStatus
from .notification_manager import NotificationManager
from .scheduler import PoolScheduler
from .service_controller import ServiceController
from .storage_pool import FreeSpaceProbe, StoragePoolManager
from .task_handlers import TaskHandlers
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)


class PoolService:
    """Builds every component from the configuration and owns their lifecycle."""

    def __init__(self, config_manager: ConfigManager,
                 probe: Optional[FreeSpaceProbe] = None,
                 notifier: Optional[NotificationManager] = None,
                 service_controller: Optional[ServiceController] = None):
        self.config_manager = config_manager
        config = config_manager.load_config()
        self.config = config

        self.database = Database(config.database_url)
        self.database.init_db()
        self.metastore = Metastore(self.database, config.metastore_backup_count)
        self.notifier = notifier or NotificationManager(config.notification_config_path)
        self.service_controller = service_controller or ServiceController(config.restart_command)

        self.pool = StoragePoolManager(
            config.storage_pool_drives,
            config_manager.get_shares(),
            metastore=self.metastore,
            policy=DestinationPolicy(config.destination_policy),
            min_free_space_bytes=config.min_free_space_bytes,
            probe=probe,
            config_manager=config_manager,
            service_controller=self.service_controller,
            notifier=self.notifier,
        )
        self.queue = TaskQueue(self.database, share_names=self.pool.share_names)
        self.checker = ConsistencyChecker(
            self.pool,
            self.metastore,
            adopt_orphans=config.adopt_orphans,
            checksum_mismatch_policy=ChecksumMismatchPolicy(config.checksum_mismatch_policy),
            pending_task_lookup=self.queue.has_pending_for,
        )
        self.handlers = TaskHandlers(
            self.pool, self.metastore, self.checker, queue=self.queue, notifier=self.notifier
        )
        self.dispatcher = TaskDispatcher(
            self.queue, self.handlers, max_workers=config.max_workers, notifier=self.notifier
        )
        self.scheduler = PoolScheduler(
            self.queue,
            self.pool,
            fsck_schedule=config.fsck_schedule,
            free_space_refresh_seconds=config.free_space_refresh_seconds,
            backup_job=self.write_metastore_backups,
        )

    def start(self) -> None:
        """Recover interrupted work and start the dispatcher and scheduler."""
        self.queue.recover_interrupted()
        if not self.metastore.backup_drives():
            self.pool.choose_backup_metastores()
        self.dispatcher.start()
        self.scheduler.start()
        logger.info(
            f"Greypool started with {len(self.pool.list_drives())} drives "
            f"and {len(self.pool.shares)} shares"
        )

    def write_metastore_backups(self) -> int:
        """Refresh the metastore backup on every drive chosen to hold one."""
        written = 0
        for drive_path in self.metastore.backup_drives():
            if self.pool.is_drive_available(drive_path) and self.metastore.write_backup(drive_path):
                written += 1
        return written

    def stop(self) -> None:
        self.scheduler.stop()
        self.checker.cancel()
        self.dispatcher.stop()
        self.database.dispose()
        logger.info("Greypool stopped")

    def status(self) -> dict:
        return {
            "drives": [self.pool.to_dict(d) for d in self.pool.list_drives(include_gone=True)],
            "shares": sorted(self.pool.shares),
            "pending_tasks": self.queue.count(TaskStatus.PENDING),
            "running_tasks": self.queue.count(TaskStatus.RUNNING),
            "failed_tasks": self.queue.count(TaskStatus.FAILED),
            "next_fsck": self.scheduler.get_next_fsck_time() if self.scheduler.scheduler.running else None,
        }
