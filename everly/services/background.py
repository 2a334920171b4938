"""
Bounded executor for side effects that should not hold up a request
(metric recording after a webhook, for instance).

Submissions beyond max_pending are rejected instead of queued without bound,
and every task failure is logged from the done-callback.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from everly.logging_config import get_logger

logger = get_logger(__name__)


class TaskTracker:
    def __init__(self):
        self.stats = {
            "total_submitted": 0,
            "total_completed": 0,
            "total_failed": 0,
            "total_rejected": 0,
            "active_count": 0,
            "max_concurrent": 0,
        }
        self.lock = threading.Lock()

    def task_started(self):
        with self.lock:
            self.stats["total_submitted"] += 1
            self.stats["active_count"] += 1
            self.stats["max_concurrent"] = max(
                self.stats["max_concurrent"], self.stats["active_count"]
            )

    def task_finished(self, success=True):
        with self.lock:
            self.stats["active_count"] -= 1
            if success:
                self.stats["total_completed"] += 1
            else:
                self.stats["total_failed"] += 1

    def task_rejected(self):
        with self.lock:
            self.stats["total_rejected"] += 1

    def snapshot(self):
        with self.lock:
            return dict(self.stats)


class BackgroundTaskRunner:
    """Run callables inside the app context on a bounded thread pool."""

    def __init__(self, app, max_workers=4, max_pending=100, inline=False):
        self.app = app
        self.inline = inline
        self.tracker = TaskTracker()
        self._slots = threading.BoundedSemaphore(max_pending)
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="everly-bg-"
        )

    def _run(self, name, fn, args, kwargs):
        start = time.monotonic()
        with self.app.app_context():
            try:
                fn(*args, **kwargs)
            except Exception:
                self.tracker.task_finished(success=False)
                logger.error("Background task failed", task=name, exc_info=True)
                return False
        self.tracker.task_finished(success=True)
        logger.debug("Background task completed", task=name, duration_seconds=time.monotonic() - start)
        return True

    def submit(self, name, fn, *args, **kwargs):
        """
        Submit fn for background execution.

        Returns:
            bool: False if the runner is saturated and the task was dropped
        """
        if not self._slots.acquire(blocking=False):
            self.tracker.task_rejected()
            logger.warning("Background runner saturated; dropping task", task=name)
            return False

        self.tracker.task_started()

        if self.inline:
            try:
                self._run(name, fn, args, kwargs)
            finally:
                self._slots.release()
            return True

        future = self._executor.submit(self._run, name, fn, args, kwargs)

        def _release(f):
            self._slots.release()

        future.add_done_callback(_release)
        return True

    def shutdown(self, wait=False):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
