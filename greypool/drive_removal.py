"""Removal of a drive from the storage pool."""

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .file_copier import is_temp_name, move_directory
from .models import (
    FsckMode, FsckReport, ProblemKind, Task, TaskOption, TaskOptions, TaskType
)
from .tree_walker import EntryKind, walk

logger = logging.getLogger(__name__)

SHARE_ASIDE_SUFFIX = ".tmp"


@dataclass
class RemovalResult:
    """Outcome of a drive removal."""
    drive: str
    graceful: bool
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    files_relocated: int = 0
    files_failed: int = 0
    shares_skipped: List[str] = field(default_factory=list)
    fsck_task_id: Optional[int] = None
    log: List[str] = field(default_factory=list)

    def note(self, message: str) -> None:
        logger.info(message)
        self.log.append(message)


class DriveRemoval:
    """
    Takes a drive out of the pool without ever dropping the last valid copy of a file.

    Order of operations:
      1. mark the drive going, so it receives no new copy
      2. relocate what only lives on it (when it is still readable)
      3. drop it from the configuration and restart the share daemon
      4. mark it gone
      5. schedule a full fsck
      6. notify the operator
    """

    def __init__(self, pool, checker, queue=None, config_manager=None,
                 service_controller=None, notifier=None):
        self.pool = pool
        self.checker = checker
        self.queue = queue
        self.config_manager = config_manager
        self.service_controller = service_controller
        self.notifier = notifier

    def run(self, drive_path: str, graceful: bool) -> RemovalResult:
        """
        Remove a drive.

        Args:
            drive_path: Mount path of the drive
            graceful: The drive is still readable; copies are relocated from it

        Returns:
            RemovalResult
        """
        drive_path = os.path.normpath(drive_path)
        result = RemovalResult(drive=drive_path, graceful=graceful)

        self.pool.mark_going(drive_path)
        result.note(f"Drive {drive_path} marked as going; it will receive no new file copies")

        if graceful:
            self.pool.write_sentinel(drive_path)
            backups = self.pool.choose_backup_metastores(exclude=[drive_path])
            result.note(f"Metastore backups now on: {', '.join(backups) or 'no drive'}")
            for share_name in sorted(self.pool.shares):
                self._relocate_share(share_name, drive_path, result)
        else:
            result.note(f"Drive {drive_path} is not available; nothing can be copied from it")

        self._drop_from_configuration(drive_path, result)
        self.pool.mark_gone(drive_path)
        result.note(f"Drive {drive_path} is now gone from the storage pool")

        self._schedule_fsck(result)
        if graceful:
            self.pool.remove_sentinel(drive_path)

        result.finished_at = datetime.now()
        self._notify(result)
        return result

    def _relocate_share(self, share_name: str, drive_path: str, result: RemovalResult) -> None:
        share = self.pool.get_share(share_name)
        drive = self.pool.get_drive(drive_path)
        share_root = drive.share_path(share_name)
        aside = share_root + SHARE_ASIDE_SUFFIX

        if os.path.isdir(aside):
            # An earlier removal stopped while the share directory was set aside.
            move_directory(aside, share_root)
            result.note(f"Restored {aside} left by an interrupted removal")

        if not os.path.isdir(share_root):
            result.shares_skipped.append(share_name)
            result.note(f"Share {share_name} has no files on {drive_path}; skipping")
            return

        required = self.pool.required_copies(share)
        if required == 1:
            result.note(f"Moving files of share {share_name} off {drive_path}")
            report = self.checker.check_scoped(
                share_name, share_root, going_drive=drive_path,
                title=f"Relocation of {share_name} from {drive_path}",
            )
            result.files_relocated += report.copies_created
            self._record_failures(report, result)
            return

        result.note(f"Checking that every file of share {share_name} on {drive_path} has another copy")
        os.rename(share_root, aside)
        try:
            fixed = self.checker.fix_symlinks(share_name)
            result.note(f"Repointed {fixed} links of share {share_name} to other copies")
        finally:
            os.rename(aside, share_root)

        report = FsckReport(title=f"Relocation of {share_name} from {drive_path}")
        for entry in walk(share_root):
            if entry.kind != EntryKind.FILE or is_temp_name(entry.path):
                continue
            try:
                if self.checker.has_copy_elsewhere(share_name, entry.rel_path, drive_path):
                    continue
            except OSError as e:
                result.note(f"Cannot verify the other copies of {entry.path}: {e}")
            result.note(f"{entry.path} has no other valid copy; creating one")
            if self.checker.check_file_safely(share, entry.rel_path, report, going_drive=drive_path,
                                              modes=FsckMode.CHECK | FsckMode.VALIDATE_COPIES):
                result.files_relocated += 1
        self._record_failures(report, result)

    @staticmethod
    def _record_failures(report: FsckReport, result: RemovalResult) -> None:
        for problem in report.found(ProblemKind.WRONG_CHECKSUM):
            result.note(f"Copy {problem.path} failed validation: {problem.detail}")
        for kind in (ProblemKind.COPY_FAILED, ProblemKind.UNDER_REPLICATED, ProblemKind.FILE_ERROR):
            for problem in report.found(kind):
                result.files_failed += 1
                result.note(f"Failed to relocate {problem.path} ({kind.value}): {problem.detail}")

    def _drop_from_configuration(self, drive_path: str, result: RemovalResult) -> None:
        if self.config_manager is not None:
            if self.config_manager.remove_storage_pool_drive(drive_path):
                result.note(f"Removed {drive_path} from the configuration file")
            else:
                result.note(f"Could not persist the removal of {drive_path}; update the configuration by hand")

        if self.service_controller is not None:
            success, _, stderr = self.service_controller.restart()
            if success:
                result.note("Share daemon restarted")
            else:
                result.note(f"Share daemon restart failed: {stderr}")

    def _schedule_fsck(self, result: RemovalResult) -> None:
        if self.queue is None:
            return
        task = self.queue.enqueue(Task(
            type=TaskType.FSCK,
            options=TaskOptions(frozenset({TaskOption.EMAIL})),
        ))
        result.fsck_task_id = task.id
        result.note(f"Scheduled fsck of all shares (task {task.id})")

    def _notify(self, result: RemovalResult) -> None:
        if self.notifier is None:
            return
        subject = (
            f"[Greypool] Removal of pool drive at {result.drive} completed on {socket.gethostname()}"
        )
        body = "\n".join(result.log)
        if result.files_failed:
            body += f"\n\n{result.files_failed} files could not be relocated."
        self.notifier.notify(subject, body)
