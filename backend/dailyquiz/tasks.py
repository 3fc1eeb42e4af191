"""Detached background tasks for best-effort side effects."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger("dailyquiz.tasks")


class TaskDispatcher:
    """Run fire-and-forget work (question banking, seen marking, notices).

    Callers never wait on or see the outcome; failures are logged and
    counted. With `inline=True` tasks run immediately in the caller's
    thread, which keeps tests deterministic.
    """

    def __init__(self, max_workers: int = 4, inline: bool = False):
        self.inline = inline
        self._executor = None if inline else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dailyquiz-task")
        self._lock = threading.Lock()
        self._stats = {"submitted": 0, "succeeded": 0, "failed": 0}

    def submit(self, name: str, fn: Callable, *args, **kwargs) -> Optional[Future]:
        with self._lock:
            self._stats["submitted"] += 1
        if self._executor is None:
            self._run(name, fn, args, kwargs)
            return None
        try:
            return self._executor.submit(self._run, name, fn, args, kwargs)
        except RuntimeError:
            # executor already shut down
            logger.warning("task %s dropped after shutdown", name)
            with self._lock:
                self._stats["failed"] += 1
            return None

    def _run(self, name: str, fn: Callable, args: tuple, kwargs: dict) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("background task %s failed", name)
            with self._lock:
                self._stats["failed"] += 1
            return
        with self._lock:
            self._stats["succeeded"] += 1

    def stats(self) -> dict:
        with self._lock:
            return dict(self._stats)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
