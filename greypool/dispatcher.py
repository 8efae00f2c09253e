"""Worker pool executing queued tasks."""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Optional, Set

from .models import Task
from .notification_manager import NotificationLevel

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """
    Pulls claimable tasks from the queue and runs them on a bounded worker pool.

    No exception escapes a task: every outcome becomes a task status.
    """

    def __init__(self, queue, handlers, max_workers: int = 4,
                 notifier=None, poll_interval: float = 1.0):
        """
        Initialize the dispatcher.

        Args:
            queue: TaskQueue to pull from
            handlers: TaskHandlers running each task type
            max_workers: Maximum number of tasks running at once
            notifier: Receives task failure notifications
            poll_interval: Seconds between polls of an idle queue
        """
        self.queue = queue
        self.handlers = handlers
        self.max_workers = max_workers
        self.notifier = notifier
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def execute(self, task: Task) -> bool:
        """
        Run one claimed task and record its outcome.

        Returns:
            True if the task completed
        """
        try:
            self.handlers.handle(task)
        except Exception as e:
            logger.exception(f"Task {task.id} ({task.type.value} {task.share}/{task.path}) failed")
            self._record_outcome(self.queue.fail, task, f"{type(e).__name__}: {e}")
            if self.notifier is not None:
                self.notifier.notify(
                    f"[Greypool] Task {task.id} ({task.type.value}) failed",
                    f"Task {task.id} on {task.share or 'the pool'}/{task.path} failed: {e}",
                    NotificationLevel.ERROR,
                )
            return False

        if not self._record_outcome(self.queue.complete, task):
            return False
        logger.debug(f"Task {task.id} completed")
        return True

    def _record_outcome(self, record, task: Task, *args) -> bool:
        try:
            record(task, *args)
        except Exception:
            # The queue releases the task even when this write fails.
            logger.exception(f"Could not record the outcome of task {task.id}")
            return False
        return True

    def dispatch_one(self) -> Optional[Task]:
        """Claim and run a single task in the calling thread."""
        task = self.queue.claim_next()
        if task is None:
            return None
        self.execute(task)
        return task

    def drain(self) -> int:
        """
        Run tasks until none is left that can be claimed.

        Returns:
            Number of tasks executed
        """
        executed = 0
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="greypool-worker") as executor:
            running: Set = set()
            while True:
                while len(running) < self.max_workers:
                    task = self.queue.claim_next()
                    if task is None:
                        break
                    running.add(executor.submit(self.execute, task))
                    executed += 1
                if not running:
                    return executed
                done, running = wait(running, return_when=FIRST_COMPLETED)
                self._log_crashes(done)

    @staticmethod
    def _log_crashes(done) -> None:
        for future in done:
            error = future.exception()
            if error is not None:
                logger.error(f"Worker crashed: {type(error).__name__}: {error}")

    def notify_new_task(self) -> None:
        """Wake the background loop without waiting for the next poll."""
        self._wakeup.set()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="greypool-dispatcher", daemon=True)
        self._thread.start()
        logger.info(f"Task dispatcher started with {self.max_workers} workers")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("Task dispatcher stopped")

    def _run(self) -> None:
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="greypool-worker") as executor:
            running: Set = set()
            while not self._stop_event.is_set():
                while len(running) < self.max_workers:
                    task = self.queue.claim_next()
                    if task is None:
                        break
                    running.add(executor.submit(self.execute, task))

                if running:
                    done, running = wait(running, timeout=self.poll_interval,
                                         return_when=FIRST_COMPLETED)
                    self._log_crashes(done)
                else:
                    self._wakeup.wait(self.poll_interval)
                    self._wakeup.clear()
