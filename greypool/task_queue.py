"""Durable FIFO task queue with path-scoped ordering."""

import logging
import os
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update

from .database import Database, TaskRecord
from .exceptions import InvalidTaskError, ShareNotFoundError
from .models import (
    Task, TaskOptions, TaskStatus, TaskType, normalize_rel_path, paths_overlap
)

logger = logging.getLogger(__name__)

SHARE_SCOPED_TYPES = {
    TaskType.WRITE, TaskType.UNLINK, TaskType.RENAME, TaskType.MOVE,
    TaskType.RMDIR, TaskType.ATTRIBUTE_CHANGE, TaskType.FSCK_FILE,
}

# Tasks acting on specific files, as opposed to whole-pool maintenance.
FILE_OPERATION_TYPES = SHARE_SCOPED_TYPES - {TaskType.FSCK_FILE}


class TaskQueue:
    """
    Persistent queue of file-operation intents.

    Tasks are claimed oldest first. A task is held back while an older task
    touching an overlapping path (the same path, a parent or a child) is still
    pending or running, so operations on one file are applied in order while
    unrelated files proceed in parallel.
    """

    def __init__(self, database: Database,
                 share_names: Optional[Callable[[], Iterable[str]]] = None):
        """
        Initialize the queue.

        Args:
            database: Shared database
            share_names: Returns the configured share names; enables share checks at enqueue time
        """
        self.db = database
        self.share_names = share_names
        self._claim_lock = threading.Lock()
        self._running: Dict[int, Task] = {}

    def enqueue(self, task: Task) -> Task:
        """
        Validate and persist a task.

        Raises:
            InvalidTaskError: If the task is malformed or carries options its type does not accept
            ShareNotFoundError: If the task names a share that is not configured
        """
        self._validate(task)
        with self.db.session() as session:
            record = TaskRecord(
                type=task.type.value,
                share=task.share,
                path=normalize_rel_path(task.path) if task.share else (task.path or ""),
                target_share=task.target_share,
                target_path=normalize_rel_path(task.target_path) if task.target_path else None,
                options=task.options.encode(),
                status=TaskStatus.PENDING.value,
                created_at=datetime.now(),
            )
            session.add(record)
            session.flush()
            stored = self._to_task(record)
        logger.debug(f"Queued task {stored.id}: {stored.type.value} {stored.share}/{stored.path}")
        return stored

    def _validate(self, task: Task) -> None:
        unsupported = task.options.unsupported_for(task.type)
        if unsupported:
            names = ", ".join(option.value for option in unsupported)
            raise InvalidTaskError(f"Options not supported by {task.type.value} tasks: {names}")

        if task.type in SHARE_SCOPED_TYPES and not task.share:
            raise InvalidTaskError(f"{task.type.value} tasks need a share")

        if task.type in (TaskType.WRITE, TaskType.UNLINK, TaskType.RENAME, TaskType.MOVE,
                         TaskType.RMDIR, TaskType.FSCK_FILE) and not normalize_rel_path(task.path):
            raise InvalidTaskError(f"{task.type.value} tasks need a path")

        if task.type in (TaskType.RENAME, TaskType.MOVE) and not task.target_path:
            raise InvalidTaskError(f"{task.type.value} tasks need a target path")

        if task.type == TaskType.MOVE and not task.target_share:
            raise InvalidTaskError("move tasks need a target share")

        if task.type == TaskType.RENAME and task.target_share not in (None, task.share):
            raise InvalidTaskError("rename tasks stay within one share; use move")

        if task.type == TaskType.REMOVE_DRIVE and not os.path.isabs(task.path or ""):
            raise InvalidTaskError("remove tasks need the absolute mount path of a drive")

        if self.share_names is not None:
            known = set(self.share_names())
            for share in (task.share, task.target_share):
                if share and share not in known:
                    raise ShareNotFoundError(share)

    def claim_next(self) -> Optional[Task]:
        """
        Claim the oldest task that no older pending or running task blocks.

        Returns:
            The claimed task, now running, or None if nothing can run yet
        """
        with self._claim_lock:
            with self.db.session() as session:
                query = select(TaskRecord).where(
                    TaskRecord.status == TaskStatus.PENDING.value
                ).order_by(TaskRecord.id)
                blockers: List[Task] = list(self._running.values())
                for record in session.scalars(query):
                    candidate = self._to_task(record)
                    if any(candidate.overlaps(other) for other in blockers):
                        blockers.append(candidate)
                        continue
                    record.status = TaskStatus.RUNNING.value
                    record.started_at = datetime.now()
                    candidate.status = TaskStatus.RUNNING
                    candidate.started_at = record.started_at
                    self._running[candidate.id] = candidate
                    return candidate
        return None

    def complete(self, task: Task) -> None:
        """Mark a task done, then archive it."""
        self._finish(task, TaskStatus.DONE)
        self._finish(task, TaskStatus.ARCHIVED)

    def fail(self, task: Task, error: str) -> None:
        self._finish(task, TaskStatus.FAILED, error)

    def _finish(self, task: Task, status: TaskStatus, error: Optional[str] = None) -> None:
        now = datetime.now()
        try:
            with self.db.session() as session:
                record = session.get(TaskRecord, task.id)
                if record is None:
                    logger.warning(f"Task {task.id} disappeared from the queue")
                else:
                    record.status = status.value
                    record.completed_at = now
                    if error is not None:
                        record.error = error
        finally:
            # Overlapping tasks must not stay blocked behind a failed status write.
            with self._claim_lock:
                self._running.pop(task.id, None)
        task.status = status
        task.completed_at = now
        if error is not None:
            task.error = error

    def get(self, task_id: int) -> Optional[Task]:
        with self.db.session() as session:
            record = session.get(TaskRecord, task_id)
            return self._to_task(record) if record is not None else None

    def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100) -> List[Task]:
        """Most recent tasks first."""
        with self.db.session() as session:
            query = select(TaskRecord).order_by(TaskRecord.id.desc()).limit(limit)
            if status is not None:
                query = query.where(TaskRecord.status == status.value)
            return [self._to_task(record) for record in session.scalars(query)]

    def count(self, status: TaskStatus) -> int:
        with self.db.session() as session:
            query = select(func.count(TaskRecord.id)).where(TaskRecord.status == status.value)
            return session.scalar(query) or 0

    def has_pending_for(self, share: str, path: str) -> bool:
        """True if a queued or running file operation touches this path (or a parent/child of it)."""
        path = normalize_rel_path(path)
        with self.db.session() as session:
            query = select(TaskRecord).where(
                TaskRecord.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
                TaskRecord.type.in_([t.value for t in FILE_OPERATION_TYPES]),
                or_(TaskRecord.share == share, TaskRecord.target_share == share),
            )
            for record in session.scalars(query):
                if record.share == share and paths_overlap(record.path, path):
                    return True
                target_share = record.target_share or record.share
                if record.target_path is not None and target_share == share \
                        and paths_overlap(record.target_path, path):
                    return True
        return False

    def has_pending(self, task_type: TaskType, share: Optional[str] = None) -> bool:
        with self.db.session() as session:
            query = select(TaskRecord.id).where(
                TaskRecord.status == TaskStatus.PENDING.value,
                TaskRecord.type == task_type.value,
            )
            query = query.where(TaskRecord.share.is_(None) if share is None else TaskRecord.share == share)
            return session.scalars(query.limit(1)).first() is not None

    def recover_interrupted(self) -> int:
        """
        Requeue tasks left running by a previous process.

        Handlers are idempotent, so replaying them is safe.
        """
        with self.db.session() as session:
            result = session.execute(
                update(TaskRecord)
                .where(TaskRecord.status == TaskStatus.RUNNING.value)
                .values(status=TaskStatus.PENDING.value, started_at=None)
            )
            count = result.rowcount or 0
        if count:
            logger.warning(f"Requeued {count} tasks interrupted by a restart")
        return count

    @staticmethod
    def _to_task(record: TaskRecord) -> Task:
        return Task(
            id=record.id,
            type=TaskType(record.type),
            share=record.share,
            path=record.path,
            target_share=record.target_share,
            target_path=record.target_path,
            options=TaskOptions.decode(record.options),
            status=TaskStatus(record.status),
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            error=record.error,
        )
