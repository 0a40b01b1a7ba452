"""
Fork-join execution of per-unit work items.

Each call fans out over ``range(n)`` and joins before returning; exceptions of
a work item propagate to the caller. With one thread everything runs inline.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerPool:
    def __init__(self, n_threads: int = 1) -> None:
        if int(n_threads) < 1:
            raise ValueError(f"n_threads must be >= 1, got {n_threads}")
        self.n_threads = int(n_threads)
        self.lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.n_threads, thread_name_prefix="unitnet")
            logger.debug("Started worker pool with %d threads", self.n_threads)
        return self._executor

    def map(self, fn: Callable[[int], T], n: int) -> List[T]:
        """Results of ``fn(i)`` for ``i in range(n)``, in index order."""
        if self.n_threads == 1 or n <= 1:
            return [fn(i) for i in range(n)]
        executor = self._ensure_executor()
        futures = [executor.submit(fn, i) for i in range(n)]
        return [f.result() for f in futures]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
