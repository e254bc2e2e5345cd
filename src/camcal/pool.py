"""
Bounded task pool for detector work.

A ThreadPoolExecutor with explicit slot accounting: submit() never blocks
and never queues. When every worker slot is taken the task is rejected and
the caller treats the sample as skipped.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .log import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_WORKERS = 3


class TaskPool:
    """
    Reject-on-full worker pool.

    Usage:
        pool = TaskPool(max_workers=3)
        if not pool.submit(detect, frame.copy()):
            skipped += 1
        pool.shutdown()
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS, name: str = "camcal-worker"):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = int(max_workers)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)

        self._cond = threading.Condition()
        self._active = 0
        self._closed = False

        self.accepted = 0
        self.rejected = 0
        self.completed = 0
        self.failed = 0

    def submit(self, fn: Callable, *args, **kwargs) -> bool:
        """
        Run fn(*args, **kwargs) on a free worker.

        Returns:
            True if the task was accepted, False if the pool is full or closed
        """
        with self._cond:
            if self._closed or self._active >= self.max_workers:
                self.rejected += 1
                return False
            self._active += 1
            self.accepted += 1

        try:
            self._executor.submit(self._run, fn, args, kwargs)
        except RuntimeError:
            # Executor shut down between the check and the submit.
            with self._cond:
                self._active -= 1
                self.accepted -= 1
                self.rejected += 1
                self._cond.notify_all()
            return False
        return True

    def _run(self, fn: Callable, args, kwargs) -> None:
        ok = True
        try:
            fn(*args, **kwargs)
        except Exception:
            ok = False
            logger.exception("Task %s failed", getattr(fn, "__name__", repr(fn)))
        finally:
            with self._cond:
                self._active -= 1
                if ok:
                    self.completed += 1
                else:
                    self.failed += 1
                self._cond.notify_all()

    @property
    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def closed(self) -> bool:
        return self._closed

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no task is running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for in-flight tasks."""
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.debug(
            "Pool shut down (accepted=%d rejected=%d completed=%d failed=%d)",
            self.accepted, self.rejected, self.completed, self.failed,
        )
