"""Handlers applying queued file operations to the storage pool."""

import logging
import os
import socket
from typing import Callable, Dict, Optional

from .exceptions import DriveNotFoundError
from .file_copier import copy_attributes, move_directory, prune_empty_dirs
from .models import (
    FsckMode, FsckReport, Share, Task, TaskOption, TaskType, normalize_rel_path
)
from .tree_walker import EntryKind, resolve_entry, walk

logger = logging.getLogger(__name__)


class TaskHandlers:
    """
    One handler per task type.

    Handlers are idempotent: replaying a task after a crash leaves the pool
    in the same state as running it once.
    """

    def __init__(self, pool, metastore, checker, queue=None, notifier=None):
        self.pool = pool
        self.metastore = metastore
        self.checker = checker
        self.queue = queue
        self.notifier = notifier
        self._handlers: Dict[TaskType, Callable[[Task], Optional[object]]] = {
            TaskType.WRITE: self.handle_write,
            TaskType.UNLINK: self.handle_unlink,
            TaskType.RENAME: self.handle_rename,
            TaskType.MOVE: self.handle_rename,
            TaskType.RMDIR: self.handle_rmdir,
            TaskType.ATTRIBUTE_CHANGE: self.handle_attribute_change,
            TaskType.REMOVE_DRIVE: self.handle_remove_drive,
            TaskType.FSCK: self.handle_fsck,
            TaskType.FSCK_FILE: self.handle_fsck_file,
        }

    def handle(self, task: Task):
        """Run the handler for a task; exceptions propagate to the dispatcher."""
        logger.debug(f"Handling task {task.id}: {task.type.value} {task.share}/{task.path}")
        return self._handlers[task.type](task)

    def handle_write(self, task: Task) -> Optional[FsckReport]:
        share = self.pool.get_share(task.share)
        rel_path = normalize_rel_path(task.path)
        resolved = resolve_entry(share.landing_path(rel_path))
        if resolved is None:
            logger.info(f"{share.name}/{rel_path} no longer exists; nothing to write")
            return None

        landing, kind = resolved
        rel_path = os.path.relpath(landing, share.landing_zone)
        report = FsckReport(title=f"write of {share.name}/{rel_path}")
        if kind == EntryKind.FILE:
            self.checker.distribute_new_file(share, rel_path, report)
        elif kind == EntryKind.SYMLINK:
            self.checker.resync_from_primary(share, rel_path, report)
        return report

    def handle_unlink(self, task: Task) -> None:
        share = self.pool.get_share(task.share)
        rel_path = normalize_rel_path(task.path)
        if resolve_entry(share.landing_path(rel_path)) is not None:
            logger.info(f"{share.name}/{rel_path} exists again; keeping its copies")
            return

        drives = set(self.metastore.copies_of(share.name, rel_path, include_distrusted=True))
        drives.update(self.checker.locate_copies(share, rel_path))
        for drive_path in sorted(drives):
            try:
                drive = self.pool.get_drive(drive_path)
            except DriveNotFoundError:
                continue
            resolved = resolve_entry(drive.share_path(share.name, rel_path))
            if resolved is not None and resolved[1] == EntryKind.FILE:
                self.checker.delete_copy(share, rel_path, drive_path, resolved[0])
        self.metastore.forget(share.name, rel_path)
        logger.info(f"Deleted {share.name}/{rel_path} from the pool")

    def handle_rename(self, task: Task) -> None:
        share = self.pool.get_share(task.share)
        target_share = self.pool.get_share(task.target_share or task.share)
        old_path = normalize_rel_path(task.path)
        new_path = normalize_rel_path(task.target_path)

        for drive in self.pool.list_drives():
            if not drive.available:
                continue
            resolved = resolve_entry(drive.share_path(share.name, old_path))
            if resolved is None:
                continue
            destination = drive.share_path(target_share.name, new_path)
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            if resolved[1] == EntryKind.DIRECTORY:
                # Merges into a directory left by an earlier, interrupted rename.
                move_directory(resolved[0], destination)
            else:
                os.replace(resolved[0], destination)
            prune_empty_dirs(os.path.dirname(resolved[0]), drive.share_path(share.name))

        self.metastore.move(share.name, old_path, target_share.name, new_path)
        self._relink(target_share, new_path)
        logger.info(f"Renamed {share.name}/{old_path} to {target_share.name}/{new_path}")

    def _relink(self, share: Share, rel_path: str) -> None:
        """Repoint landing zone links under a renamed path."""
        resolved = resolve_entry(share.landing_path(rel_path))
        if resolved is None:
            return
        landing, kind = resolved
        if kind == EntryKind.SYMLINK:
            self.checker.check_file(share, rel_path)
        elif kind == EntryKind.DIRECTORY:
            for entry in walk(landing, rel_root=rel_path):
                if entry.kind in (EntryKind.SYMLINK, EntryKind.FILE):
                    self.checker.check_file(share, entry.rel_path)

    def handle_rmdir(self, task: Task) -> None:
        share = self.pool.get_share(task.share)
        rel_path = normalize_rel_path(task.path)
        if os.path.isdir(share.landing_path(rel_path)):
            logger.info(f"{share.name}/{rel_path} exists again; keeping it on the drives")
            return
        for drive in self.pool.list_drives():
            directory = drive.share_path(share.name, rel_path)
            if not os.path.isdir(directory):
                continue
            try:
                os.rmdir(directory)
            except OSError as e:
                logger.warning(f"Cannot remove {directory}: {e}")

    def handle_attribute_change(self, task: Task) -> None:
        share = self.pool.get_share(task.share)
        rel_path = normalize_rel_path(task.path)
        resolved = resolve_entry(share.landing_path(rel_path))
        if resolved is None:
            return
        landing, kind = resolved

        if kind == EntryKind.DIRECTORY:
            source = landing
        elif kind == EntryKind.SYMLINK:
            source = os.readlink(landing)
            if not os.path.exists(source):
                self.checker.check_file(share, rel_path)
                return
        else:
            return

        for drive in self.pool.list_drives():
            if not drive.available:
                continue
            copy = drive.share_path(share.name, rel_path)
            if os.path.normpath(copy) == os.path.normpath(source) or not os.path.exists(copy):
                continue
            copy_attributes(source, copy)
        logger.debug(f"Propagated attributes of {share.name}/{rel_path}")

    def handle_remove_drive(self, task: Task):
        graceful = task.options.has(TaskOption.DRIVE_IS_AVAILABLE)
        return self.pool.remove_drive(task.path, graceful, self.checker, self.queue)

    def handle_fsck(self, task: Task) -> FsckReport:
        modes = FsckMode.from_options(task.options)
        report = self.checker.check(task.share or None, modes)
        if not report.is_empty():
            logger.warning(f"fsck found {report.problem_count} problems")
        if task.options.has(TaskOption.EMAIL) and self.notifier is not None:
            self.notifier.notify(
                f"[Greypool] fsck report for {task.share or 'all shares'} on {socket.gethostname()}",
                report.render(),
            )
        return report

    def handle_fsck_file(self, task: Task) -> FsckReport:
        share = self.pool.get_share(task.share)
        modes = FsckMode.from_options(task.options)
        report = FsckReport(title=f"fsck of {share.name}/{task.path}")
        self.checker.check_file_safely(share, normalize_rel_path(task.path), report, modes=modes)
        return report
